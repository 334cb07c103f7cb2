"""Slack webhook routes: Events API, slash commands, interactive payloads.

Every request is verified against the signing secret before its body is
looked at. Slack expects an answer within three seconds, so membership
events only schedule a sync and return.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.database import get_session_context
from ..core.dependencies import SessionDep
from ..models import Organization
from ..services.interactions import InteractionContext, router as interaction_router
from ..services.user_sync import (
    build_slack_client,
    get_organization_by_team,
    handle_channel_membership_event,
    is_sync_channel_event,
)

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/slack", tags=["slack"])

NOT_CONNECTED = {
    "response_type": "ephemeral",
    "text": ":warning: This Slack workspace is not connected to Team Pulse. Please install the app first.",
}


# =============================================================================
# REQUEST VERIFICATION
# =============================================================================


def verify_slack_signature(
    body: bytes,
    timestamp: str,
    signature: str,
    now: float | None = None,
) -> bool:
    """
    Verify Slack request signature using HMAC-SHA256.

    See: https://api.slack.com/authentication/verifying-requests-from-slack
    """
    if not settings.slack_signing_secret:
        logger.warning("Slack signing secret not configured")
        return False

    # Check timestamp to prevent replay attacks (5 minutes)
    try:
        request_timestamp = int(timestamp)
    except ValueError:
        return False
    if abs((now or time.time()) - request_timestamp) > 60 * 5:
        logger.warning("Slack request timestamp too old")
        return False

    # Signed over raw bytes; the body need not be valid UTF-8
    sig_basestring = b"v0:" + timestamp.encode() + b":" + body
    expected_sig = "v0=" + hmac.new(
        settings.slack_signing_secret.encode(),
        sig_basestring,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected_sig, signature)


async def verified_body(
    request: Request,
    signature: str | None,
    timestamp: str | None,
) -> bytes:
    body = await request.body()

    # Unsigned requests are only tolerated in development without a secret
    if settings.environment != "development" or settings.slack_signing_secret:
        if not signature or not timestamp:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "invalid_signature", "message": "Missing Slack signature headers"},
            )
        if not verify_slack_signature(body, timestamp, signature):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "invalid_signature", "message": "Invalid Slack signature"},
            )
    return body


def interaction_context(
    session: AsyncSession,
    organization: Organization,
    slack_user_id: str,
    channel_id: str | None = None,
) -> InteractionContext:
    return InteractionContext(
        session=session,
        organization=organization,
        slack_user_id=slack_user_id,
        channel_id=channel_id,
        client_factory=lambda: build_slack_client(organization),
    )


# =============================================================================
# EVENTS
# =============================================================================


async def run_membership_sync(team_id: str, event: dict[str, Any]) -> None:
    """Background task: runs after the response with its own session."""
    async with get_session_context() as session:
        organization = await get_organization_by_team(session, team_id)
        if organization is None:
            logger.warning(f"Organization for team {team_id} vanished before sync")
            return
        await handle_channel_membership_event(session, organization, event)


@router.post("/events")
async def handle_slack_events(
    request: Request,
    background_tasks: BackgroundTasks,
    session: SessionDep,
    x_slack_signature: Annotated[str | None, Header()] = None,
    x_slack_request_timestamp: Annotated[str | None, Header()] = None,
    x_slack_retry_num: Annotated[str | None, Header()] = None,
):
    """Events API endpoint: URL verification and channel membership events."""
    body = await verified_body(request, x_slack_signature, x_slack_request_timestamp)

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_payload", "message": "Body is not JSON"},
        )

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge", "")}

    if payload.get("type") != "event_callback":
        return {"ok": True}

    if x_slack_retry_num:
        # The first delivery already scheduled the sync
        logger.info(f"Ignoring Slack event retry #{x_slack_retry_num}")
        return {"ok": True}

    team_id = payload.get("team_id", "")
    event = payload.get("event") or {}

    organization = await get_organization_by_team(session, team_id)
    if organization is None:
        logger.info(f"Event {event.get('type')} for unconnected team {team_id}")
        return {"ok": True}

    if is_sync_channel_event(organization, event):
        background_tasks.add_task(run_membership_sync, team_id, event)

    return {"ok": True}


# =============================================================================
# SLASH COMMANDS
# =============================================================================


@router.post("/commands")
async def handle_slack_command(
    request: Request,
    session: SessionDep,
    x_slack_signature: Annotated[str | None, Header()] = None,
    x_slack_request_timestamp: Annotated[str | None, Header()] = None,
):
    """
    Handle the /pulse slash command.

    Usage examples:
    - /pulse
    - /pulse whoami
    - /pulse join
    - /pulse sync-status
    """
    await verified_body(request, x_slack_signature, x_slack_request_timestamp)

    form_data = await request.form()
    team_id = str(form_data.get("team_id", ""))
    user_id = str(form_data.get("user_id", ""))
    channel_id = str(form_data.get("channel_id", "")) or None
    command = str(form_data.get("command", "/pulse"))
    text = str(form_data.get("text", "")).strip()

    organization = await get_organization_by_team(session, team_id)
    if organization is None:
        return NOT_CONNECTED

    context = interaction_context(session, organization, user_id, channel_id)
    reply = await interaction_router.dispatch_command(context, command, text)
    return reply.to_slack()


# =============================================================================
# INTERACTIONS
# =============================================================================


@router.post("/interactions")
async def handle_slack_interactions(
    request: Request,
    session: SessionDep,
    x_slack_signature: Annotated[str | None, Header()] = None,
    x_slack_request_timestamp: Annotated[str | None, Header()] = None,
):
    """
    Handle Slack interactive components.

    This endpoint receives:
    - block_actions: button clicks in our messages
    - view_submission: modal submissions
    - shortcut / message_action: global and message shortcuts
    """
    await verified_body(request, x_slack_signature, x_slack_request_timestamp)

    # Payload is URL-encoded JSON
    form_data = await request.form()
    try:
        payload = json.loads(str(form_data.get("payload", "{}")))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_payload", "message": "payload is not JSON"},
        )

    team_id = (payload.get("team") or {}).get("id", "")
    user_id = (payload.get("user") or {}).get("id", "")
    channel_id = (payload.get("channel") or {}).get("id")

    organization = await get_organization_by_team(session, team_id)
    if organization is None:
        return NOT_CONNECTED

    context = interaction_context(session, organization, user_id, channel_id)
    reply = await interaction_router.dispatch_interaction(context, payload)

    # Default: acknowledge without response
    return reply.to_slack() if reply else {}
