"""Password hashing and strength rules.

Every call site that accepts a new password (signup, reset, admin create,
admin password reset) goes through :func:`CredentialHasher.validate`, so the
thresholds below are the only ones in the codebase.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from storefront_auth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")


@dataclass(frozen=True)
class PasswordCheck:
    valid: bool
    message: Optional[str] = None


class CredentialHasher:
    """argon2id hashing with a non-throwing compare."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    @property
    def algorithm(self) -> str:
        return PASSWORD_ALGO

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def compare(self, plaintext: str, hashed: Optional[str]) -> bool:
        if not hashed or plaintext is None:
            return False
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True

    @staticmethod
    def validate(plaintext: Optional[str]) -> PasswordCheck:
        """Return the first violated rule, or a valid check."""
        if not plaintext or len(plaintext) < MIN_PASSWORD_LENGTH:
            return PasswordCheck(
                False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        if len(plaintext) > MAX_PASSWORD_LENGTH:
            return PasswordCheck(
                False, f"Password must be at most {MAX_PASSWORD_LENGTH} characters long"
            )
        if not _UPPER.search(plaintext):
            return PasswordCheck(False, "Password must contain at least one uppercase letter")
        if not _LOWER.search(plaintext):
            return PasswordCheck(False, "Password must contain at least one lowercase letter")
        if not _DIGIT.search(plaintext):
            return PasswordCheck(False, "Password must contain at least one number")
        return PasswordCheck(True)


__all__ = ["CredentialHasher", "PasswordCheck", "PASSWORD_ALGO"]
