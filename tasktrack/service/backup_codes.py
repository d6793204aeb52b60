from __future__ import annotations

import hashlib
import hmac
import secrets
import string
from typing import List, Optional, Sequence, Tuple

ALPHABET = string.digits + string.ascii_lowercase
CODE_LENGTH = 10
DEFAULT_COUNT = 10


class BackupCodeManager:
    """One-time recovery codes.

    Codes are high-entropy random strings, so a fast digest is enough; only
    the sha256 hex digests are ever persisted.
    """

    def __init__(self, *, count: int = DEFAULT_COUNT, length: int = CODE_LENGTH) -> None:
        self.count = count
        self.length = length

    @staticmethod
    def normalize(code: str) -> str:
        return "".join(ch for ch in (code or "").lower() if ch not in "- \t")

    @classmethod
    def hash_code(cls, code: str) -> str:
        return hashlib.sha256(cls.normalize(code).encode("utf-8")).hexdigest()

    def generate(self, count: Optional[int] = None) -> Tuple[List[str], List[str]]:
        total = self.count if count is None else count
        plaintext = [
            "".join(secrets.choice(ALPHABET) for _ in range(self.length))
            for _ in range(total)
        ]
        return plaintext, [self.hash_code(code) for code in plaintext]

    def verify_and_locate(self, input_code: str, hashed_codes: Sequence[str]) -> Optional[int]:
        normalized = self.normalize(input_code)
        if len(normalized) != self.length:
            return None
        digest = self.hash_code(normalized)
        found: Optional[int] = None
        for index, stored in enumerate(hashed_codes):
            if hmac.compare_digest(stored, digest) and found is None:
                found = index
        return found

    @staticmethod
    def format_for_display(code: str) -> str:
        """Split at the midpoint for readability: ``abcde-fghij``."""
        middle = len(code) // 2
        return f"{code[:middle]}-{code[middle:]}"
