from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict

from authlane.logging import get_logger

logger = get_logger(__name__)

REFRESH_TOKEN_TYPE = "refresh"
_SEGMENT_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


class TokenError(Exception):
    """Base class for token verification failures."""


class MalformedToken(TokenError):
    """Token is not three base64url segments or its claims are missing or mistyped."""


class InvalidSignature(TokenError):
    pass


class TokenExpired(TokenError):
    pass


class WrongTokenType(TokenError):
    pass


class AlgorithmMismatch(TokenError):
    """Header names an algorithm other than HS256."""


@dataclass(frozen=True)
class AccessClaims:
    subject_id: str
    email: str
    issued_at: int
    expires_at: int


def token_digest(raw_token: str) -> str:
    """SHA-256 hex digest under which a refresh token is persisted."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class TokenCodec:
    """Signs and verifies compact HS256 access and refresh tokens."""

    def __init__(
        self,
        secret: str,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode("utf-8")
        self._access_ttl = int(access_ttl_seconds)
        self._refresh_ttl = int(refresh_ttl_seconds)
        self._clock = clock

    @property
    def access_ttl_seconds(self) -> int:
        return self._access_ttl

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._refresh_ttl

    def now(self) -> int:
        return int(self._clock())

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _load_segment(self, segment: str) -> Any:
        try:
            return json.loads(self._decode_segment(segment))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise MalformedToken("token segment is not valid base64url JSON") from exc

    def _split(self, token: str) -> tuple[str, str, str]:
        if not isinstance(token, str):
            raise MalformedToken("token must be a string")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedToken("token must have three segments")
        if not all(_SEGMENT_PATTERN.fullmatch(part) for part in parts):
            raise MalformedToken("token segments must be base64url")
        return parts[0], parts[1], parts[2]

    def _decode(self, token: str) -> Dict[str, Any]:
        header_b64, payload_b64, sig_b64 = self._split(token)
        header = self._load_segment(header_b64)
        if not isinstance(header, dict):
            raise MalformedToken("token header must be an object")
        # Reject alg substitution before any signature work
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=str(header.get("alg")))
            raise AlgorithmMismatch("unexpected signing algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignature("token signature mismatch")

        payload = self._load_segment(payload_b64)
        if not isinstance(payload, dict):
            raise MalformedToken("token claims must be an object")
        return payload

    @staticmethod
    def _int_claim(payload: Dict[str, Any], name: str) -> int:
        value = payload.get(name)
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedToken(f"claim {name!r} missing or not numeric")
        return int(value)

    @staticmethod
    def _str_claim(payload: Dict[str, Any], name: str) -> str:
        value = payload.get(name)
        if not isinstance(value, str) or not value:
            raise MalformedToken(f"claim {name!r} missing or not a string")
        return value

    def _check_expiry(self, exp: int) -> None:
        if self.now() > exp:
            raise TokenExpired("token has expired")

    def issue_access(self, subject_id: str, email: str) -> str:
        now = self.now()
        return self._encode(
            {"sub": subject_id, "email": email, "iat": now, "exp": now + self._access_ttl}
        )

    def issue_refresh(self, subject_id: str) -> str:
        now = self.now()
        return self._encode(
            {
                "sub": subject_id,
                "iat": now,
                "exp": now + self._refresh_ttl,
                "type": REFRESH_TOKEN_TYPE,
                "jti": str(uuid.uuid4()),
            }
        )

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token)
        if "type" in payload:
            raise WrongTokenType("refresh token presented as access token")
        claims = AccessClaims(
            subject_id=self._str_claim(payload, "sub"),
            email=self._str_claim(payload, "email"),
            issued_at=self._int_claim(payload, "iat"),
            expires_at=self._int_claim(payload, "exp"),
        )
        self._check_expiry(claims.expires_at)
        return claims

    def verify_refresh(self, token: str) -> str:
        payload = self._decode(token)
        if payload.get("type") != REFRESH_TOKEN_TYPE:
            raise WrongTokenType("token is not a refresh token")
        subject_id = self._str_claim(payload, "sub")
        self._check_expiry(self._int_claim(payload, "exp"))
        return subject_id

    def remaining_seconds(self, token: str) -> int:
        """Seconds until ``token`` expires, at least 1.

        Reads ``exp`` without verifying; only call on a token that already
        passed ``verify_access`` or ``verify_refresh``.
        """
        _, payload_b64, _ = self._split(token)
        payload = self._load_segment(payload_b64)
        if not isinstance(payload, dict):
            raise MalformedToken("token claims must be an object")
        return max(1, self._int_claim(payload, "exp") - self.now())
