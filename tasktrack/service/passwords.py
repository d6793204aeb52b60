from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError

from tasktrack.logging import get_logger
from tasktrack.service.errors import PasswordHashingFailure

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with constant-time verification."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4):
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # verified against when the account does not exist, so both paths cost the same
        self._dummy_digest = self._hasher.hash("tasktrack-placeholder-password")

    def hash(self, plaintext: str) -> str:
        try:
            return self._hasher.hash(plaintext)
        except HashingError as exc:
            logger.error("password_hashing_failed", error=str(exc))
            raise PasswordHashingFailure("unable to hash password") from exc

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return True on a match; mismatches and malformed digests are both False."""
        try:
            return self._hasher.verify(digest, plaintext)
        except (InvalidHash, VerificationError):
            return False

    def verify_dummy(self, plaintext: str) -> bool:
        self.verify(plaintext, self._dummy_digest)
        return False
