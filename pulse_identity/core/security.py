"""Security utilities: random tokens, hashing, and credential encryption."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging
import secrets

from cryptography.fernet import Fernet, InvalidToken

from .config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """A stored credential could not be encrypted or decrypted."""


# =============================================================================
# RANDOM TOKENS
# =============================================================================


def generate_state_token() -> str:
    """CSRF state for the login flow: 256 bits, hex-encoded."""
    return secrets.token_hex(32)


def generate_session_token() -> str:
    """Opaque browser session identifier."""
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    """SHA-256 of a token, for storing lookups without the raw value."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def tokens_match(expected: str, received: str) -> bool:
    """Constant-time comparison of two tokens."""
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


@dataclass(frozen=True)
class SetupToken:
    """A one-time account setup token. Only `token_hash` is persisted."""

    token: str
    token_hash: str
    expires_at: datetime


def generate_setup_token(ttl_days: int | None = None) -> SetupToken:
    token = secrets.token_urlsafe(32)
    days = ttl_days if ttl_days is not None else settings.setup_token_ttl_days
    return SetupToken(
        token=token,
        token_hash=hash_token(token),
        expires_at=datetime.now(timezone.utc) + timedelta(days=days),
    )


# =============================================================================
# ENCRYPTION HELPERS
# =============================================================================


def encrypt_token(token: str) -> str:
    """Encrypt a token for secure storage."""
    if not settings.encryption_enabled:
        logger.warning("Encryption not configured - storing token in plaintext")
        return token

    try:
        f = Fernet(settings.encryption_key.encode())
        return f.encrypt(token.encode()).decode()
    except (ValueError, TypeError) as e:
        logger.error(f"Failed to encrypt token: {e}")
        raise CredentialError("Failed to securely store credentials") from e


def decrypt_token(encrypted: str) -> str:
    """Decrypt a stored token."""
    if not settings.encryption_enabled:
        return encrypted

    try:
        f = Fernet(settings.encryption_key.encode())
        return f.decrypt(encrypted.encode()).decode()
    except (InvalidToken, ValueError, TypeError) as e:
        logger.error(f"Failed to decrypt token: {e}")
        raise CredentialError("Failed to retrieve credentials") from e
