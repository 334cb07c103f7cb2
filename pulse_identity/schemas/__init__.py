"""Pulse identity API schemas.

Schemas are organized by domain:
- base: Common base model, errors, references
- auth: Login session
- directory: Sync outcomes and run history
"""

from .auth import LoginErrorResponse, SessionIdentity, SessionResponse
from .base import (
    ErrorDetail,
    ErrorResponse,
    OrganizationRef,
    PulseBaseModel,
    UserRef,
)
from .directory import (
    SyncErrorResponse,
    SyncOutcomeResponse,
    SyncRunListResponse,
    SyncRunResponse,
)

__all__ = [
    # Base
    "PulseBaseModel",
    "ErrorDetail",
    "ErrorResponse",
    "OrganizationRef",
    "UserRef",
    # Auth
    "SessionIdentity",
    "SessionResponse",
    "LoginErrorResponse",
    # Directory
    "SyncErrorResponse",
    "SyncOutcomeResponse",
    "SyncRunResponse",
    "SyncRunListResponse",
]
