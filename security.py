"""
security.py: Credential Hasher.

One passlib context is used for both account passwords and share passwords.
bcrypt_sha256 pre-hashes the secret so bytes past bcrypt's 72-byte input
limit still count; plain bcrypt digests remain verifiable. Every digest
carries its own salt, and passlib's verify compares digests in constant time.
"""
import os
import re

from passlib.context import CryptContext

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

pwd_context = CryptContext(
    schemes=["bcrypt_sha256", "bcrypt"],
    deprecated="auto",
    bcrypt_sha256__rounds=BCRYPT_ROUNDS,
    bcrypt__rounds=BCRYPT_ROUNDS,
)

MIN_PASSWORD_LENGTH = 8

ACCOUNT_PASSWORD_RULES = (
    (r"[A-Z]", "an uppercase letter"),
    (r"[a-z]", "a lowercase letter"),
    (r"\d", "a digit"),
)


def hash_secret(secret: str) -> str:
    """Hash a secret. The plaintext is not retained."""
    return pwd_context.hash(secret)


def verify_secret(secret: str, digest: str) -> bool:
    """Verify a secret against a stored digest. Never raises; a malformed digest is a mismatch."""
    if not secret or not digest:
        return False
    try:
        return pwd_context.verify(secret, digest)
    except (ValueError, TypeError):
        return False


# Account passwords go through the same hasher
hash_password = hash_secret
verify_password = verify_secret


def validate_password_strength(password: str) -> tuple[bool, str]:
    """Rules for wallet owner accounts. Share passwords only need to be non-blank."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return False, f"Account password needs at least {MIN_PASSWORD_LENGTH} characters"
    missing = [label for pattern, label in ACCOUNT_PASSWORD_RULES if not re.search(pattern, password)]
    if missing:
        return False, "Account password needs " + ", ".join(missing)
    return True, ""
