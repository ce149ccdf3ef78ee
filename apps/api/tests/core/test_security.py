"""
Unit tests for security utilities.

These tests cover:
- Password hashing and verification (bcrypt and legacy SHA-256)
- Token and MFA code generation
- Password policy and generated passwords
- Email normalisation and validation
"""

import hashlib
import string
from unittest.mock import patch

from app.core.security import (
    GENERATED_PASSWORD_ALPHABET,
    burn_password_check,
    digests_match,
    generate_mfa_code,
    generate_password,
    generate_token,
    hash_password,
    hash_token,
    is_legacy_hash,
    normalize_email,
    password_needs_rehash,
    validate_email_address,
    validate_password_strength,
    verify_password,
)


class TestPasswordHashing:
    """Tests for hash_password / verify_password."""

    def test_round_trip(self):
        """A password verifies against its own hash."""
        password_hash = hash_password("Correct1Horse")
        assert verify_password("Correct1Horse", password_hash)

    def test_different_password_does_not_verify(self):
        password_hash = hash_password("Correct1Horse")
        assert not verify_password("Correct1Horsf", password_hash)

    def test_hashes_are_salted(self):
        """Hashing the same password twice gives different hashes."""
        assert hash_password("Correct1Horse") != hash_password("Correct1Horse")

    def test_missing_hash_never_verifies(self):
        assert not verify_password("anything", None)
        assert not verify_password("anything", "")

    def test_malformed_hash_never_verifies(self):
        assert not verify_password("anything", "$2b$not-a-real-hash")

    def test_long_passwords_are_accepted(self):
        """bcrypt only reads 72 bytes; longer inputs must not raise."""
        password = "Aa1" + "x" * 200
        assert verify_password(password, hash_password(password))


class TestLegacyHashes:
    """Tests for unsalted SHA-256 hashes written by older releases."""

    def test_legacy_hash_verifies(self):
        legacy = hashlib.sha256(b"OldPassw0rd").hexdigest()
        assert verify_password("OldPassw0rd", legacy)
        assert not verify_password("OldPassw0rd!", legacy)

    def test_legacy_hash_needs_rehash(self):
        legacy = hashlib.sha256(b"OldPassw0rd").hexdigest()
        assert is_legacy_hash(legacy)
        assert password_needs_rehash(legacy)

    def test_bcrypt_hash_does_not_need_rehash(self):
        assert not password_needs_rehash(hash_password("NewPassw0rd"))

    def test_burn_password_check_returns_nothing(self):
        assert burn_password_check("whatever") is None


class TestTokens:
    """Tests for opaque token helpers."""

    def test_tokens_are_unique(self):
        tokens = {generate_token() for _ in range(100)}
        assert len(tokens) == 100

    def test_token_is_url_safe(self):
        allowed = set(string.ascii_letters + string.digits + "-_")
        assert set(generate_token()) <= allowed

    def test_hash_token_is_sha256_hex(self):
        assert hash_token("abc") == hashlib.sha256(b"abc").hexdigest()

    def test_digests_match(self):
        assert digests_match(hash_token("a"), hash_token("a"))
        assert not digests_match(hash_token("a"), hash_token("b"))
        assert not digests_match(None, hash_token("a"))
        assert not digests_match(hash_token("a"), None)


class TestMfaCode:
    """Tests for one-time code generation."""

    def test_code_is_six_ascii_digits(self):
        for _ in range(500):
            code = generate_mfa_code()
            assert len(code) == 6
            assert code.isascii() and code.isdigit()

    def test_leading_zeros_are_preserved(self):
        with patch("app.core.security.secrets.randbelow", return_value=42):
            assert generate_mfa_code() == "000042"


class TestPasswordPolicy:
    """Tests for validate_password_strength."""

    def test_strong_password_has_no_problems(self):
        assert validate_password_strength("Abcdefg1") == []

    def test_each_rule_is_reported(self):
        problems = validate_password_strength("abc")
        assert len(problems) == 3  # length, uppercase, digit

    def test_missing_lowercase(self):
        assert validate_password_strength("ABCDEFG1") == [
            "Password must contain at least one lowercase letter."
        ]

    def test_generated_password_meets_policy(self):
        for _ in range(50):
            password = generate_password()
            assert len(password) == 12
            assert validate_password_strength(password) == []
            assert set(password) <= set(GENERATED_PASSWORD_ALPHABET)

    def test_generated_password_never_shorter_than_minimum(self):
        assert len(generate_password(4)) == 8


class TestEmail:
    """Tests for email helpers."""

    def test_normalize_email(self):
        assert normalize_email("  Awa.Kone@Eduvate.App ") == "awa.kone@eduvate.app"

    def test_valid_email(self):
        assert validate_email_address("awa.kone@eduvate.app") is None

    def test_invalid_email(self):
        assert validate_email_address("not-an-email") == "Invalid email address."

    def test_empty_email(self):
        assert validate_email_address("   ") == "Email is required."
