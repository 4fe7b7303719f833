from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

from authlane.logging import get_logger
from authlane.service.errors import (
    AuthenticationError,
    ConflictError,
    UnavailableError,
)
from authlane.service.passwords import PasswordHashing
from authlane.service.tokens import AccessClaims, TokenCodec, TokenError, token_digest
from authlane.service.validation import normalize_email, validate_registration
from authlane.storage.errors import ConstraintViolation, StorageError, StoreUnavailable
from authlane.storage.models import (
    RefreshTokenRecord,
    User,
    UserProfile,
    UserSummary,
    utcnow,
)

logger = get_logger(__name__)

DENYLIST_KEY_PREFIX = "blacklist:token:"
INVALID_CREDENTIALS = "invalid email or password"


class CredentialStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> bool: ...

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token_by_digest(
        self, token_hash: str
    ) -> Optional[RefreshTokenRecord]: ...

    def list_refresh_tokens_for_user(self, user_id: str) -> List[RefreshTokenRecord]: ...

    def delete_refresh_token_by_digest(self, token_hash: str) -> bool: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


class Denylist(Protocol):
    async def set_with_ttl(self, key: str, ttl_seconds: int, value: str = "1") -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> None: ...


@dataclass(frozen=True)
class AuthResult:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_in: int
    refresh_expires_in: int
    user: UserSummary
    token_type: str = "Bearer"

    def to_response(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "user": {"id": self.user.id, "email": self.user.email},
        }


def denylist_key(raw_token: str) -> str:
    return f"{DENYLIST_KEY_PREFIX}{raw_token}"


@contextmanager
def _store_errors(op: str) -> Iterator[None]:
    """Re-raise store outages as UnavailableError with operation context."""
    try:
        yield
    except StoreUnavailable as exc:
        logger.error("auth_store_unavailable", op=op, error=str(exc))
        raise UnavailableError(
            "service temporarily unavailable", detail={"op": op}
        ) from exc


class AuthService:
    """Registration, login, refresh rotation, logout and access validation.

    Owns every invariant that spans the credential store and the denylist.
    Holds no mutable state of its own; concurrent calls coordinate only
    through the stores.
    """

    def __init__(
        self,
        store: CredentialStore,
        denylist: Denylist,
        codec: TokenCodec,
        passwords: PasswordHashing,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.denylist = denylist
        self.codec = codec
        self.passwords = passwords
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def register(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        normalized = validate_registration(email, password)
        with _store_errors("register_lookup"):
            existing = self.store.get_user_by_email(normalized)
        if existing:
            raise ConflictError("user with this email already exists")

        user = User.new(normalized, self.passwords.hash(password))
        try:
            with _store_errors("create_user"):
                user = self.store.create_user(user)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration of the same email
            raise ConflictError("user with this email already exists") from exc
        self.logger.info("user_registered", user_id=user.id)
        return await self._issue_token_pair(
            user, device_info=device_info, ip_address=ip_address
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        with _store_errors("login_lookup"):
            user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            self.passwords.burn_verify(password or "")
            self.logger.info("login_failed", reason="unknown_user")
            raise AuthenticationError(INVALID_CREDENTIALS)
        # Verify before the active check so every failure costs one hash
        password_ok = self.passwords.verify(user.password_hash, password or "")
        if not user.is_active:
            self.logger.info("login_failed", reason="inactive", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not password_ok:
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        try:
            self.store.update_last_login(user.id, self._now())
        except StorageError as exc:
            self.logger.warning("last_login_update_failed", user_id=user.id, error=str(exc))
        self.logger.info("user_logged_in", user_id=user.id)
        return await self._issue_token_pair(
            user, device_info=device_info, ip_address=ip_address
        )

    async def refresh_rotate(
        self,
        raw_refresh_token: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        try:
            subject_id = self.codec.verify_refresh(raw_refresh_token)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=type(exc).__name__)
            raise AuthenticationError("invalid refresh token") from exc

        digest = token_digest(raw_refresh_token)
        with _store_errors("refresh_lookup"):
            record = self.store.get_refresh_token_by_digest(digest)
        if record is None or record.user_id != subject_id:
            self.logger.info("refresh_rejected", reason="unknown_token")
            raise AuthenticationError("invalid refresh token")
        if record.is_expired(self._now()):
            self.logger.info("refresh_rejected", reason="expired", user_id=subject_id)
            raise AuthenticationError("refresh token expired")
        with _store_errors("denylist_check"):
            revoked = await self.denylist.exists(denylist_key(raw_refresh_token))
        if revoked:
            self.logger.warning("refresh_rejected", reason="denylisted", user_id=subject_id)
            raise AuthenticationError("invalid refresh token")

        with _store_errors("refresh_owner"):
            user = self.store.get_user(subject_id)
        if not user or not user.is_active:
            self.logger.info("refresh_rejected", reason="inactive_owner", user_id=subject_id)
            raise AuthenticationError("invalid refresh token")

        await self._consume_refresh_token(raw_refresh_token, digest, user.id)
        self.logger.info("refresh_rotated", user_id=user.id)
        return await self._issue_token_pair(
            user, device_info=device_info, ip_address=ip_address
        )

    async def _consume_refresh_token(self, raw: str, digest: str, user_id: str) -> None:
        """Denylist the token, then delete its record; only one caller may win the delete."""
        denylisted = True
        try:
            await self.denylist.set_with_ttl(
                denylist_key(raw), self.codec.remaining_seconds(raw)
            )
        except StoreUnavailable as exc:
            denylisted = False
            self.logger.warning("refresh_denylist_failed", user_id=user_id, error=str(exc))

        try:
            removed = self.store.delete_refresh_token_by_digest(digest)
        except StoreUnavailable as exc:
            if not denylisted:
                self.logger.error("refresh_consume_failed", user_id=user_id, error=str(exc))
                raise UnavailableError(
                    "service temporarily unavailable", detail={"op": "refresh_consume"}
                ) from exc
            self.logger.warning("refresh_record_delete_failed", user_id=user_id, error=str(exc))
            return

        if not removed:
            self.logger.warning("refresh_token_reuse_detected", user_id=user_id)
            raise AuthenticationError("invalid refresh token")

    async def logout(self, user_id: str, raw_refresh_token: Optional[str] = None) -> None:
        """Revoke the presented refresh token if it belongs to ``user_id``.

        Idempotent; token state and store failures are logged, never raised.
        """
        if raw_refresh_token:
            await self._revoke_owned_refresh_token(user_id, raw_refresh_token)
        self.logger.info("user_logged_out", user_id=user_id)

    async def _revoke_owned_refresh_token(self, user_id: str, raw: str) -> None:
        digest = token_digest(raw)
        try:
            record = self.store.get_refresh_token_by_digest(digest)
        except StorageError as exc:
            self.logger.warning("logout_lookup_failed", user_id=user_id, error=str(exc))
            return
        if record is None or record.user_id != user_id:
            return

        ttl = max(1, int((record.expires_at - self._now()).total_seconds()))
        try:
            await self.denylist.set_with_ttl(denylist_key(raw), ttl)
        except StorageError as exc:
            self.logger.warning("logout_denylist_failed", user_id=user_id, error=str(exc))
        try:
            self.store.delete_refresh_token_by_digest(digest)
        except StorageError as exc:
            self.logger.warning("logout_delete_failed", user_id=user_id, error=str(exc))

    async def validate_access(self, raw_access_token: str) -> AccessClaims:
        with _store_errors("denylist_check"):
            revoked = await self.denylist.exists(denylist_key(raw_access_token))
        if revoked:
            raise AuthenticationError("token has been revoked")
        try:
            return self.codec.verify_access(raw_access_token)
        except TokenError as exc:
            self.logger.info("access_token_rejected", reason=type(exc).__name__)
            raise AuthenticationError("invalid or expired token") from exc

    async def get_profile(self, user_id: str) -> UserProfile:
        with _store_errors("get_profile"):
            user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("user not found")
        return UserProfile.from_user(user)

    async def purge_expired_refresh_tokens(self) -> int:
        with _store_errors("purge_expired_refresh_tokens"):
            removed = self.store.delete_expired_refresh_tokens(self._now())
        self.logger.info("expired_refresh_tokens_purged", removed=removed)
        return removed

    async def _issue_token_pair(
        self,
        user: User,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        access_token = self.codec.issue_access(user.id, user.email)
        refresh_token = self.codec.issue_refresh(user.id)
        record = RefreshTokenRecord.new(
            user.id,
            token_digest(refresh_token),
            self._now() + timedelta(seconds=self.codec.refresh_ttl_seconds),
            device_info=device_info,
            ip_address=ip_address,
        )
        try:
            self.store.create_refresh_token(record)
        except StorageError as exc:
            self.logger.error("refresh_token_persist_failed", user_id=user.id, error=str(exc))
            raise UnavailableError(
                "service temporarily unavailable", detail={"op": "issue_tokens"}
            ) from exc
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.codec.access_ttl_seconds,
            refresh_expires_in=self.codec.refresh_ttl_seconds,
            user=UserSummary.from_user(user),
        )
