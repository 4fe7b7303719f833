from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from authlane.logging import get_logger
from authlane.storage.errors import ConstraintViolation
from authlane.storage.models import OAuthProvider, RefreshTokenRecord, User, utcnow


class MemoryStore:
    """In-memory credential store with the same constraints as the Postgres schema.

    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._users_by_email: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.oauth_providers: Dict[str, OAuthProvider] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # users
    def create_user(self, user: User) -> User:
        key = user.email.lower()
        with self._data_lock:
            if key in self._users_by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = replace(user)
            self._users_by_email[key] = user.id
        return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._users_by_email.get(email.lower())
            user = self.users.get(user_id) if user_id else None
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> bool:
        stamp = at or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.last_login_at = stamp
            user.updated_at = stamp
            return True

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.is_active = is_active
            user.updated_at = utcnow()
            return True

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "refresh token user missing", {"user_id": record.user_id}
                )
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "token hash already exists", {"field": "token_hash"}
                )
            self.refresh_tokens[record.token_hash] = replace(record)
        return replace(record)

    def get_refresh_token_by_digest(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def list_refresh_tokens_for_user(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [
                replace(rec) for rec in self.refresh_tokens.values() if rec.user_id == user_id
            ]
        return sorted(records, key=lambda rec: rec.created_at, reverse=True)

    def delete_refresh_token_by_digest(self, token_hash: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token_hash, None) is not None

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            expired = [
                digest
                for digest, rec in self.refresh_tokens.items()
                if rec.expires_at < cutoff
            ]
            for digest in expired:
                self.refresh_tokens.pop(digest, None)
        return len(expired)

    # oauth providers
    def create_oauth_provider(
        self,
        user_id: str,
        provider: str,
        provider_user_id: str,
        email: Optional[str] = None,
    ) -> OAuthProvider:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("oauth provider user missing", {"user_id": user_id})
            for existing in self.oauth_providers.values():
                if (
                    existing.provider == provider
                    and existing.provider_user_id == provider_user_id
                ):
                    raise ConstraintViolation(
                        "oauth provider connection already exists",
                        {"field": "provider_user_id"},
                    )
            link = OAuthProvider(
                id=str(uuid.uuid4()),
                user_id=user_id,
                provider=provider,
                provider_user_id=provider_user_id,
                email=email,
            )
            self.oauth_providers[link.id] = link
        return replace(link)

    def get_oauth_provider(
        self, provider: str, provider_user_id: str
    ) -> Optional[OAuthProvider]:
        with self._data_lock:
            for link in self.oauth_providers.values():
                if link.provider == provider and link.provider_user_id == provider_user_id:
                    return replace(link)
        return None

    def list_oauth_providers_for_user(self, user_id: str) -> List[OAuthProvider]:
        with self._data_lock:
            return [
                replace(link)
                for link in self.oauth_providers.values()
                if link.user_id == user_id
            ]

    def delete_oauth_provider(self, provider_id: str) -> bool:
        with self._data_lock:
            return self.oauth_providers.pop(provider_id, None) is not None

    # lifecycle
    def ping(self) -> None:
        return None

    def close(self) -> None:
        self.logger.debug("memory_store_closed", users=len(self.users))
