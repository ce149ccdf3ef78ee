"""
Security Utilities

Password hashing, opaque token generation and credential validation
used by the authentication and user administration modules.

Security considerations:
- Passwords are hashed with bcrypt (salted, adaptive cost)
- Legacy unsalted SHA-256 password hashes are still accepted and flagged
  for migration to bcrypt on the next successful login
- Session, invitation tokens and MFA codes are generated with the
  `secrets` module and only their SHA-256 digest is stored
- Digest comparison uses hmac.compare_digest (constant time)
"""

import hashlib
import hmac
import logging
import re
import secrets
from functools import lru_cache

import bcrypt
from email_validator import EmailNotValidError, validate_email

from app.core.config import settings

logger = logging.getLogger(__name__)

# bcrypt only considers the first 72 bytes of the input
BCRYPT_MAX_BYTES = 72

# 256 bits of entropy when using token_urlsafe
TOKEN_BYTES = 32

MFA_CODE_DIGITS = 6

PASSWORD_MIN_LENGTH = 8

# Ambiguous characters (0/O, 1/l/I) are excluded from generated passwords
GENERATED_PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789!@#$%"

_LEGACY_SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def _password_bytes(password: str) -> bytes:
    password_bytes = password.encode("utf-8")
    if len(password_bytes) > BCRYPT_MAX_BYTES:
        password_bytes = password_bytes[:BCRYPT_MAX_BYTES]
    return password_bytes


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password

    Returns:
        bcrypt hash string (includes the salt and cost)
    """
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")


def is_legacy_hash(password_hash: str) -> bool:
    """Return True for unsalted SHA-256 hex digests written by older releases."""
    return bool(_LEGACY_SHA256_PATTERN.match(password_hash))


def verify_password(password: str, password_hash: str | None) -> bool:
    """
    Verify a password against a stored hash.

    Accepts bcrypt hashes and legacy SHA-256 hex digests. Malformed or
    missing hashes never verify.

    Args:
        password: Plain text password to check
        password_hash: Stored hash

    Returns:
        True if the password matches
    """
    if not password_hash:
        return False

    if is_legacy_hash(password_hash):
        candidate = hashlib.sha256(password.encode("utf-8")).hexdigest()
        return hmac.compare_digest(candidate, password_hash)

    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError as e:
        logger.error(f"Unreadable password hash: {e}")
        return False


def password_needs_rehash(password_hash: str) -> bool:
    """True when the stored hash should be upgraded to bcrypt."""
    return is_legacy_hash(password_hash)


@lru_cache(maxsize=1)
def _dummy_password_hash() -> bytes:
    # Same cost as real hashes so unknown accounts take as long as known ones
    return bcrypt.hashpw(b"eduvate-dummy-password", bcrypt.gensalt(rounds=settings.bcrypt_rounds))


def burn_password_check(password: str) -> None:
    """Run a bcrypt verification whose result is discarded."""
    bcrypt.checkpw(_password_bytes(password), _dummy_password_hash())


def generate_token() -> str:
    """
    Generate an opaque, unguessable token.

    Returns:
        URL-safe token string (43 characters for 32 bytes of entropy)
    """
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str) -> str:
    """
    Hash a token (or MFA code) for storage using SHA-256.

    Only the digest is persisted, so a database leak does not expose
    usable credentials.
    """
    return hashlib.sha256(token.encode()).hexdigest()


def digests_match(left: str | None, right: str | None) -> bool:
    """Constant-time comparison of two stored digests."""
    if left is None or right is None:
        return False
    return hmac.compare_digest(left, right)


def generate_mfa_code() -> str:
    """
    Generate a one-time numeric code.

    Uniform over 000000-999999, leading zeros preserved.
    """
    return f"{secrets.randbelow(10**MFA_CODE_DIGITS):0{MFA_CODE_DIGITS}d}"


def validate_password_strength(password: str) -> list[str]:
    """
    Check a password against the password policy.

    Returns:
        List of human readable problems; empty when the password is acceptable
    """
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long.")
    if not any(c.isupper() for c in password):
        errors.append("Password must contain at least one uppercase letter.")
    if not any(c.islower() for c in password):
        errors.append("Password must contain at least one lowercase letter.")
    if not any(c.isdigit() for c in password):
        errors.append("Password must contain at least one number.")
    return errors


def generate_password(length: int | None = None) -> str:
    """
    Generate a random password that satisfies the password policy.

    Args:
        length: Password length (defaults to settings.generated_password_length)
    """
    length = max(length or settings.generated_password_length, PASSWORD_MIN_LENGTH)
    while True:
        password = "".join(secrets.choice(GENERATED_PASSWORD_ALPHABET) for _ in range(length))
        if not validate_password_strength(password):
            return password


def normalize_email(email: str) -> str:
    """Lowercase and trim an email address."""
    return email.strip().lower()


def validate_email_address(email: str) -> str | None:
    """
    Validate the syntax of an email address.

    Returns:
        An error message, or None when the address is valid
    """
    if not email or not email.strip():
        return "Email is required."
    try:
        validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError:
        return "Invalid email address."
    return None


__all__ = [
    "hash_password",
    "verify_password",
    "is_legacy_hash",
    "password_needs_rehash",
    "burn_password_check",
    "generate_token",
    "hash_token",
    "digests_match",
    "generate_mfa_code",
    "generate_password",
    "validate_password_strength",
    "validate_email_address",
    "normalize_email",
]
