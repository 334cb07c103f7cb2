"""Base schemas and common types for the Pulse identity API."""

from uuid import UUID

from pydantic import BaseModel, ConfigDict


# =============================================================================
# BASE SCHEMAS
# =============================================================================


class PulseBaseModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,  # Enable ORM mode
        populate_by_name=True,
        use_enum_values=True,
    )


# =============================================================================
# ERROR RESPONSES
# =============================================================================


class ErrorDetail(PulseBaseModel):
    """Detailed error information."""

    field: str | None = None
    message: str
    code: str


class ErrorResponse(PulseBaseModel):
    """Standard error response format."""

    error: str
    message: str
    details: list[ErrorDetail] = []
    request_id: str | None = None


# =============================================================================
# COMMON REFERENCE SCHEMAS
# =============================================================================


class UserRef(PulseBaseModel):
    """Minimal directory record reference.

    Emails are plain strings: members without a visible Slack email carry a
    placeholder `@slack.local` address.
    """

    id: UUID
    name: str
    email: str
    role: str
    is_active: bool


class OrganizationRef(PulseBaseModel):
    """Minimal organization reference."""

    id: UUID
    slug: str
    name: str
