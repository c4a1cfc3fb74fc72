from __future__ import annotations

import secrets
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class PasswordHashing(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def compare(self, plaintext: str, hashed: str) -> bool: ...

    def dummy_compare(self, plaintext: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing with a throwaway hash for unknown-account comparisons."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def compare(self, plaintext: str, hashed: str) -> bool:
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def dummy_compare(self, plaintext: str) -> bool:
        """Spend the same work as a real comparison and always fail.

        Login runs this for unknown emails so response timing does not reveal
        whether an account exists.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.compare(plaintext, self._dummy_hash)
        return False
