from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str = field(repr=False)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    is_active: bool = True
    is_email_verified: bool = False

    @classmethod
    def new(cls, email: str, password_hash: str) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    token_hash: str = field(repr=False)
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    device_info: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=utcnow(),
            device_info=device_info,
            ip_address=ip_address,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class OAuthProvider:
    id: str
    user_id: str
    provider: str
    provider_user_id: str
    email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class UserSummary:
    id: str
    email: str

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(id=user.id, email=user.email)


@dataclass(frozen=True)
class UserProfile:
    """Outward view of a user; never carries the password digest."""

    id: str
    email: str
    created_at: datetime
    updated_at: datetime
    last_login_at: Optional[datetime]
    is_email_verified: bool

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            email=user.email,
            created_at=user.created_at,
            updated_at=user.updated_at,
            last_login_at=user.last_login_at,
            is_email_verified=user.is_email_verified,
        )
