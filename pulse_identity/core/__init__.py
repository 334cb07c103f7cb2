"""Core application utilities.

Request dependencies live in `core.dependencies`; they build on the Slack
integration and are imported from there directly.
"""

from .config import Settings, get_settings
from .database import (
    async_session_factory,
    close_db,
    engine,
    get_session,
    get_session_context,
    init_db,
)
from .security import (
    CredentialError,
    decrypt_token,
    encrypt_token,
    generate_setup_token,
    generate_state_token,
    hash_token,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "engine",
    "async_session_factory",
    "get_session",
    "get_session_context",
    "init_db",
    "close_db",
    # Security
    "CredentialError",
    "encrypt_token",
    "decrypt_token",
    "generate_setup_token",
    "generate_state_token",
    "hash_token",
]
