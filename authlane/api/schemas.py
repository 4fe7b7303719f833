from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from authlane.storage.models import UserProfile

# Stable error categories carried in every error body
ERROR_CODES = frozenset(
    {
        "invalid_input",
        "unauthorized",
        "conflict",
        "rate_limited",
        "unavailable",
        "server_error",
    }
)

MAX_EMAIL_LENGTH = 254
MAX_PASSWORD_LENGTH = 256


class ErrorResponse(BaseModel):
    error: str
    message: str

    @field_validator("error")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(ERROR_CODES))}"
            )
        return value


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str = Field(..., min_length=1, max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str = Field(..., min_length=1, max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class UserInfo(BaseModel):
    id: str
    email: str


class AuthResponse(BaseModel):
    access_token: str
    token_type: Literal["Bearer"] = "Bearer"
    expires_in: int
    user: UserInfo


class MessageResponse(BaseModel):
    message: str


class UserResponse(BaseModel):
    id: str
    email: str
    created_at: datetime
    updated_at: datetime
    last_login_at: Optional[datetime] = None
    is_email_verified: bool = False

    @field_serializer("created_at", "updated_at", "last_login_at")
    def _rfc3339(self, value: Optional[datetime]) -> Optional[str]:
        if value is None:
            return None
        return value.isoformat(timespec="seconds").replace("+00:00", "Z")

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserResponse":
        return cls(
            id=profile.id,
            email=profile.email,
            created_at=profile.created_at,
            updated_at=profile.updated_at,
            last_login_at=profile.last_login_at,
            is_email_verified=profile.is_email_verified,
        )


class HealthResponse(BaseModel):
    status: Literal["pass", "fail"]
    errors: Optional[Dict[str, Any]] = None
