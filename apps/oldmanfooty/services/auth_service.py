"""
Credential hashing and token generation.
"""

import secrets
import bcrypt

# 32 random bytes, hex-encoded to 64 characters
TOKEN_BYTES = 32


def hash_password(password: str) -> str:
    """Hash a plaintext password with bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Check a plaintext password against a stored bcrypt hash."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage
        return False


def generate_token() -> str:
    """Cryptographically random hex token (invitations, unsubscribe links)."""
    return secrets.token_hex(TOKEN_BYTES)
