"""Sign in with Slack (OpenID Connect) routes.

Login never writes to the directory: it only links the browser session to
the Slack identity and, when one exists, its directory record.
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.dependencies import (
    IDENTITY_KEY,
    ORGANIZATION_KEY,
    USER_KEY,
    CurrentUserDep,
    OIDCClientDep,
    ResolverDep,
    ServerSessionDep,
    SessionDep,
    StateStoreDep,
)
from ..core.redirect import RequestHints
from ..core.sessions import ServerSession, save_server_session
from ..integrations.slack.errors import (
    LoginError,
    TokenExchangeFailed,
    UnknownOrganization,
    WorkspaceMismatch,
)
from ..integrations.slack.oidc import SlackIdentity
from ..models import Organization, User
from ..schemas import OrganizationRef, SessionIdentity, SessionResponse, UserRef

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/auth", tags=["authentication"])

LOGIN_FAILED = "slack_login_failed"


# =============================================================================
# HELPERS
# =============================================================================


def request_hints(request: Request) -> RequestHints:
    return RequestHints(headers=dict(request.headers), scheme=request.url.scheme)


def wants_json(request: Request) -> bool:
    return "application/json" in request.headers.get("accept", "")


async def get_organization_by_slug(session: AsyncSession, slug: str | None) -> Organization | None:
    if not slug:
        return None
    result = await session.execute(select(Organization).where(Organization.slug == slug))
    return result.scalar_one_or_none()


async def find_directory_record(
    session: AsyncSession, organization: Organization, identity: SlackIdentity
) -> User | None:
    """Match by Slack user id, then by email. Read-only."""
    result = await session.execute(
        select(User).where(
            User.organization_id == organization.id,
            User.slack_user_id == identity.slack_user_id,
        )
    )
    user = result.scalar_one_or_none()
    if user is not None:
        return user

    result = await session.execute(
        select(User).where(
            User.organization_id == organization.id,
            User.email == identity.email,
        )
    )
    return result.scalar_one_or_none()


async def login_failed(
    request: Request,
    session: AsyncSession,
    server_session: ServerSession,
    exc: LoginError,
) -> Response:
    """Log the diagnostic; show the browser only the generic message."""
    logger.warning(f"Slack login rejected ({exc.code}): {exc}")

    if wants_json(request):
        response: Response = JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": LOGIN_FAILED, "message": exc.user_message},
        )
    else:
        query = urlencode({"error": LOGIN_FAILED})
        response = RedirectResponse(
            f"{settings.frontend_url.rstrip('/')}/login?{query}",
            status_code=status.HTTP_303_SEE_OTHER,
        )

    # Persist the consumed state so the same callback cannot be replayed
    await save_server_session(session, server_session, response)
    await session.commit()
    return response


def establish_session(
    server_session: ServerSession,
    identity: SlackIdentity,
    organization: Organization,
    user: User | None,
) -> None:
    """Replace the pre-login session with a fresh one holding the identity."""
    server_session.clear()
    server_session.rotate()
    server_session[IDENTITY_KEY] = {
        "sub": identity.sub,
        "email": identity.email,
        "name": identity.name,
        "slack_user_id": identity.slack_user_id,
        "team_id": identity.team_id,
        "team_name": identity.team_name,
    }
    server_session[ORGANIZATION_KEY] = str(organization.id)
    if user is not None:
        server_session[USER_KEY] = str(user.id)


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.get("/slack/login")
async def slack_login(
    request: Request,
    session: SessionDep,
    server_session: ServerSessionDep,
    resolver: ResolverDep,
    state_store: StateStoreDep,
    oidc: OIDCClientDep,
    org: str = Query(..., min_length=1, max_length=100),
):
    """Start Sign in with Slack for the organization `org` (its slug)."""
    organization = await get_organization_by_slug(session, org)
    if organization is None:
        return await login_failed(
            request, session, server_session, UnknownOrganization(f"No organization with slug {org!r}")
        )

    redirect_uri = resolver.resolve(request_hints(request))
    issued = state_store.issue(server_session, organization.slug, redirect_uri)
    authorize_url = oidc.build_authorization_url(issued.state, redirect_uri)

    response = RedirectResponse(authorize_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    await save_server_session(session, server_session, response)
    await session.commit()
    logger.info(f"Slack login started for org {organization.slug}")
    return response


@router.get("/slack/callback")
async def slack_callback(
    request: Request,
    session: SessionDep,
    server_session: ServerSessionDep,
    resolver: ResolverDep,
    state_store: StateStoreDep,
    oidc: OIDCClientDep,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
):
    """Complete the login: validate state, exchange the code, verify the id_token."""
    try:
        issued = state_store.validate(server_session, state)
        if error:
            raise TokenExchangeFailed(f"Slack returned error={error}")
        if not code:
            raise TokenExchangeFailed("Callback carried no authorization code")

        redirect_uri = issued.redirect_uri or resolver.resolve(request_hints(request))
        tokens = await oidc.exchange_code(code, redirect_uri)
        identity = await oidc.verify_identity_token(tokens.id_token)

        organization = await get_organization_by_slug(session, issued.organization_slug)
        if organization is None:
            raise UnknownOrganization(f"Organization {issued.organization_slug!r} disappeared during login")
        if organization.slack_team_id and identity.team_id != organization.slack_team_id:
            raise WorkspaceMismatch(
                f"Identity team {identity.team_id} does not match org team {organization.slack_team_id}"
            )
    except LoginError as e:
        return await login_failed(request, session, server_session, e)

    user = await find_directory_record(session, organization, identity)
    establish_session(server_session, identity, organization, user)

    response = RedirectResponse(settings.frontend_url, status_code=status.HTTP_303_SEE_OTHER)
    await save_server_session(session, server_session, response)
    await session.commit()

    logger.info(
        f"Slack login succeeded for {identity.slack_user_id} in org {organization.slug}"
        f"{'' if user else ' (no directory record yet)'}"
    )
    return response


@router.get("/session", response_model=SessionResponse)
async def current_session(current_user: CurrentUserDep):
    """The identity behind the session cookie."""
    user = current_user.user
    return SessionResponse(
        identity=SessionIdentity(**current_user.identity),
        organization=OrganizationRef.model_validate(current_user.organization),
        user=(
            UserRef(
                id=user.id,
                name=user.name,
                email=user.email,
                role=user.role.value,
                is_active=user.is_active,
            )
            if user
            else None
        ),
    )


@router.post("/logout")
async def logout(
    response: Response,
    session: SessionDep,
    server_session: ServerSessionDep,
):
    """Drop the server-side session and its cookie."""
    server_session.clear()
    await save_server_session(session, server_session, response)
    await session.commit()
    return {"ok": True}
