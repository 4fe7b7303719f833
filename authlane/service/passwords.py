from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authlane.logging import get_logger

logger = get_logger(__name__)


class PasswordHashing:
    """Argon2id hashing with a configurable time cost."""

    def __init__(self, time_cost: int = 3) -> None:
        self._hasher = PasswordHasher(time_cost=time_cost, type=Type.ID)
        # Verified against when the account is unknown so login timing stays uniform
        self._dummy_hash = self._hasher.hash("unusable-placeholder-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, digest: str, password: str) -> bool:
        try:
            return self._hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_unusable")
            return False

    def burn_verify(self, password: str) -> None:
        self.verify(self._dummy_hash, password)
