"""
auth/passwords.py -- Password hashing, verification and strength policy.

Passwords: bcrypt used directly (no passlib wrapper). passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. Direct bcrypt usage has no compatibility shim.

bcrypt.checkpw compares digests in constant time. _DUMMY_HASH lets callers run
the same bcrypt work when an account does not exist, so response time does not
reveal whether a username is registered.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

import bcrypt

from auth.errors import WeakPassword

# bcrypt silently ignores everything past 72 bytes.
_BCRYPT_MAX_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input.
        return False


# Computed once at import so the first failed login is not measurably slower
# than subsequent ones.
DUMMY_HASH: str = hash_password("travelauth_timing_dummy")


def check_password_strength(password: str, min_length: int = 8, username: str | None = None) -> None:
    """Raise WeakPassword unless the password satisfies the policy.

    Policy: at least min_length characters, at most 72 UTF-8 bytes, at least
    one letter and one digit, and not equal to the username.
    """
    if len(password) < min_length:
        raise WeakPassword(f"Password must be at least {min_length} characters long.")
    if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise WeakPassword(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes long.")
    if not any(c.isalpha() for c in password) or not any(c.isdigit() for c in password):
        raise WeakPassword("Password must contain at least one letter and one digit.")
    if username and password.lower() == username.lower():
        raise WeakPassword("Password must not match the username.")
