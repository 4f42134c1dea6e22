"""
Connection secrets.

Bearer tokens are stored only as SHA-256 hex digests; download
passwords as salted PBKDF2 hashes. All comparisons are constant time.
"""

import base64
import hashlib
import hmac
import secrets
from typing import Optional


TOKEN_BYTES = 32
TOKEN_PREFIX_LENGTH = 8


def generate_auth_token() -> str:
    """32 random bytes, URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(secrets.token_bytes(TOKEN_BYTES)).decode("ascii").rstrip("=")


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def token_prefix(token: str) -> str:
    """Short non-secret prefix for display and logs."""
    return token[:TOKEN_PREFIX_LENGTH]


def verify_secret(secret: Optional[str], stored_hash: Optional[str]) -> bool:
    """Constant-time comparison of a plaintext secret against a stored hash."""
    if not secret or not stored_hash:
        return False
    return hmac.compare_digest(hash_secret(secret), stored_hash)


# ============================================================
# DOWNLOAD PASSWORDS
# ============================================================

PASSWORD_ALGORITHM = "pbkdf2_sha256"
PASSWORD_ITERATIONS = 200_000
SALT_BYTES = 16


def hash_password(password: str, salt: Optional[str] = None, iterations: int = PASSWORD_ITERATIONS) -> str:
    """
    Salted PBKDF2 hash, encoded as algorithm$iterations$salt$digest.

    Tokens are random and looked up by their plain SHA-256 hash;
    human-chosen passwords get a salt and key stretching instead.
    """
    salt = salt or secrets.token_hex(SALT_BYTES)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), iterations)
    return f"{PASSWORD_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_password(password: Optional[str], encoded: Optional[str]) -> bool:
    if not password or not encoded:
        return False
    try:
        algorithm, iterations, salt, _digest = encoded.split("$")
        iterations = int(iterations)
    except ValueError:
        return False
    if algorithm != PASSWORD_ALGORITHM:
        return False
    return hmac.compare_digest(hash_password(password, salt, iterations), encoded)


def verify_optional_password(password: Optional[str], encoded: Optional[str]) -> bool:
    """An unset password always verifies."""
    if not encoded:
        return True
    return verify_password(password, encoded)
