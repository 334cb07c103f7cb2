"""Login session schemas."""

from .base import OrganizationRef, PulseBaseModel, UserRef


class SessionIdentity(PulseBaseModel):
    """Verified claims from the Slack identity token."""

    sub: str
    email: str
    name: str
    slack_user_id: str | None = None
    team_id: str | None = None
    team_name: str | None = None


class SessionResponse(PulseBaseModel):
    """The signed-in identity and, when linked, its directory record."""

    authenticated: bool = True
    identity: SessionIdentity
    organization: OrganizationRef
    user: UserRef | None = None


class LoginErrorResponse(PulseBaseModel):
    error: str
    message: str
