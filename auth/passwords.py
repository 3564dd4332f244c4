"""
auth/passwords.py -- bcrypt password hashing and the password policy.

Passwords: bcrypt used directly, without a passlib wrapper. passlib's
wrap-bug detection builds a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. Direct usage is simpler and has no shim.

The _DUMMY_HASH constant enables timing equalization in the login path so
response time does not reveal whether an email is registered [C1].

Layer rule: stdlib + bcrypt only.
"""

from __future__ import annotations

import bcrypt

# bcrypt cost factor. Tests lower it to keep the suite fast.
BCRYPT_ROUNDS = 12

PASSWORD_MIN_LENGTH = 6
PASSWORD_MIN_UNIQUE_CHARS = 3
# bcrypt silently ignores everything past 72 bytes.
PASSWORD_MAX_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A missing or malformed hash is a non-match, never an exception.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Computed once at import so the first failed lookup is not measurably slower
# than later ones. Always verify against it when the email does not exist.
_DUMMY_HASH: str = hash_password("idcore_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification on a throwaway hash [C1]."""
    verify_password(plain, _DUMMY_HASH)


def password_policy_errors(plain: str) -> list[str]:
    """Return the list of policy rules the password breaks (empty = acceptable).

    Mirrors the classic identity-framework defaults: length, digit, lower,
    upper, non-alphanumeric, and a minimum number of distinct characters.
    """
    errors: list[str] = []
    if len(plain) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")
    if len(plain.encode("utf-8")) > PASSWORD_MAX_BYTES:
        errors.append(f"Password must be at most {PASSWORD_MAX_BYTES} bytes.")
    if not any(c.isdigit() for c in plain):
        errors.append("Password must contain a digit.")
    if not any(c.islower() for c in plain):
        errors.append("Password must contain a lowercase letter.")
    if not any(c.isupper() for c in plain):
        errors.append("Password must contain an uppercase letter.")
    if all(c.isalnum() for c in plain):
        errors.append("Password must contain a non-alphanumeric character.")
    if len(set(plain)) < PASSWORD_MIN_UNIQUE_CHARS:
        errors.append(f"Password must use at least {PASSWORD_MIN_UNIQUE_CHARS} different characters.")
    return errors
