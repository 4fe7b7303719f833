from __future__ import annotations

import re

from authlane.service.errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")
MIN_PASSWORD_LENGTH = 8


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.fullmatch(email or ""))


def is_strong_password(password: str) -> bool:
    """At least 8 characters with an ASCII upper, lower and digit."""
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        return False
    has_upper = any("A" <= ch <= "Z" for ch in password)
    has_lower = any("a" <= ch <= "z" for ch in password)
    has_digit = any("0" <= ch <= "9" for ch in password)
    return has_upper and has_lower and has_digit


def validate_registration(email: str, password: str) -> str:
    """Return the normalized email or raise ValidationError."""
    normalized = normalize_email(email)
    if not is_valid_email(normalized):
        raise ValidationError("invalid email format", detail={"field": "email"})
    if not is_strong_password(password):
        raise ValidationError(
            "password must be at least 8 characters and contain upper, lower case letters and a digit",
            detail={"field": "password"},
        )
    return normalized
