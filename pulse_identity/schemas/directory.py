"""Directory sync schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import Field

from .base import PulseBaseModel


class SyncErrorResponse(PulseBaseModel):
    """Structured sync error for administrators."""

    error_code: str
    message: str
    remediation: str = ""
    detail: dict[str, Any] = Field(default_factory=dict)


class SyncOutcomeResponse(PulseBaseModel):
    """Counts from one reconciliation run, or its error."""

    created: int = 0
    reactivated: int = 0
    deactivated: int = 0
    onboarded: int = 0
    onboarding_errors: int = 0
    error: SyncErrorResponse | None = None


class SyncRunResponse(PulseBaseModel):
    id: UUID
    trigger: str
    created: int
    reactivated: int
    deactivated: int
    onboarded: int
    onboarding_errors: int
    error_code: str | None = None
    error_detail: dict[str, Any] | None = None
    started_at: datetime
    finished_at: datetime | None = None


class SyncRunListResponse(PulseBaseModel):
    runs: list[SyncRunResponse]
