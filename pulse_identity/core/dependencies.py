"""FastAPI dependencies for sessions, authentication, and collaborators."""

import logging
from functools import lru_cache
from typing import Annotated, Any
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..integrations.slack.errors import AuthConfigMissing
from ..integrations.slack.oidc import OIDCClient
from ..integrations.slack.state import StateStore
from ..models import Organization, User
from .config import get_settings
from .database import get_session
from .redirect import RedirectUriResolver
from .sessions import ServerSession, load_server_session

logger = logging.getLogger(__name__)
settings = get_settings()

# Session keys written when a login completes
IDENTITY_KEY = "identity"
ORGANIZATION_KEY = "organization_id"
USER_KEY = "user_id"


SessionDep = Annotated[AsyncSession, Depends(get_session)]


async def get_server_session(request: Request, session: SessionDep) -> ServerSession:
    """Load the browser's server-side session from its cookie."""
    return await load_server_session(session, request.cookies.get(settings.session_cookie_name))


ServerSessionDep = Annotated[ServerSession, Depends(get_server_session)]


@lru_cache
def get_redirect_resolver() -> RedirectUriResolver:
    return RedirectUriResolver.from_settings(settings)


def get_state_store() -> StateStore:
    return StateStore()


def get_oidc_client(request: Request) -> OIDCClient:
    """The client built at startup; 503 while Slack login is not configured."""
    client = getattr(request.app.state, "oidc_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": AuthConfigMissing.code, "message": AuthConfigMissing.user_message},
        )
    return client


class CurrentUser:
    """Represents the signed-in identity and, if linked, its directory record."""

    def __init__(
        self,
        identity: dict[str, Any],
        organization: Organization,
        user: User | None = None,
    ):
        self.identity = identity
        self.organization = organization
        self.user = user

    @property
    def organization_id(self) -> UUID:
        return self.organization.id

    @property
    def slack_user_id(self) -> str | None:
        return self.identity.get("slack_user_id")

    @property
    def is_admin(self) -> bool:
        return self.user is not None and self.user.is_active and self.user.is_admin


async def get_current_user(
    server_session: ServerSessionDep,
    session: SessionDep,
) -> CurrentUser:
    """Dependency to get the current authenticated user from the session cookie."""
    identity = server_session.get(IDENTITY_KEY)
    org_id = server_session.get(ORGANIZATION_KEY)
    if not identity or not org_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "not_authenticated", "message": "Not authenticated"},
        )

    organization = await session.get(Organization, UUID(org_id))
    if organization is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "not_authenticated", "message": "Organization no longer exists"},
        )

    user: User | None = None
    user_id = server_session.get(USER_KEY)
    if user_id:
        user = await session.get(User, UUID(user_id))
    elif identity.get("slack_user_id"):
        # The directory record may have been created by a sync after login
        result = await session.execute(
            select(User).where(
                User.organization_id == organization.id,
                User.slack_user_id == identity["slack_user_id"],
            )
        )
        user = result.scalar_one_or_none()

    return CurrentUser(identity=identity, organization=organization, user=user)


def require_admin(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
) -> CurrentUser:
    """Require an active admin or owner directory record."""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": "Admin privileges required"},
        )
    return current_user


# Type aliases for cleaner dependency injection
CurrentUserDep = Annotated[CurrentUser, Depends(get_current_user)]
AdminDep = Annotated[CurrentUser, Depends(require_admin)]
ResolverDep = Annotated[RedirectUriResolver, Depends(get_redirect_resolver)]
StateStoreDep = Annotated[StateStore, Depends(get_state_store)]
OIDCClientDep = Annotated[OIDCClient, Depends(get_oidc_client)]
