"""Unit tests for backup code generation and lookup."""

import hashlib
import string

import pytest

from tasktrack.service.backup_codes import BackupCodeManager


@pytest.fixture
def manager():
    return BackupCodeManager()


class TestGeneration:
    """Tests for code generation."""

    def test_generates_ten_codes_by_default(self, manager):
        plain, hashed = manager.generate()
        assert len(plain) == 10
        assert len(hashed) == 10

    def test_codes_use_lowercase_alphanumerics(self, manager):
        plain, _ = manager.generate()
        allowed = set(string.digits + string.ascii_lowercase)
        for code in plain:
            assert len(code) == 10
            assert set(code) <= allowed

    def test_hashes_are_sha256_of_plaintext(self, manager):
        plain, hashed = manager.generate(count=3)
        for code, digest in zip(plain, hashed):
            assert digest == hashlib.sha256(code.encode()).hexdigest()


class TestLookup:
    """Tests for verify_and_locate."""

    def test_locates_matching_index(self, manager):
        plain, hashed = manager.generate(count=5)
        assert manager.verify_and_locate(plain[3], hashed) == 3

    def test_accepts_display_format_and_case(self, manager):
        plain, hashed = manager.generate(count=2)
        display = manager.format_for_display(plain[1]).upper()
        assert manager.verify_and_locate(f" {display} ", hashed) == 1

    def test_unknown_code_returns_none(self, manager):
        _, hashed = manager.generate(count=3)
        assert manager.verify_and_locate("zzzzzzzzzz", hashed) is None

    def test_wrong_length_returns_none(self, manager):
        plain, hashed = manager.generate(count=1)
        assert manager.verify_and_locate(plain[0][:-1], hashed) is None

    def test_empty_set_returns_none(self, manager):
        assert manager.verify_and_locate("abcdefghij", []) is None


class TestDisplay:
    def test_format_splits_in_half(self):
        assert BackupCodeManager.format_for_display("abcdefghij") == "abcde-fghij"
