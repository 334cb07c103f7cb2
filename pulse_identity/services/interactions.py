"""
Slack Interactions: slash commands and interactive payloads.

Handlers register themselves against a command (optionally with a
sub-command), a block action id, or a shortcut/view callback id. The
dispatcher only looks keys up; adding a command never touches it.

Every handler returns an InteractionReply. Its visibility (ephemeral or
in_channel) describes the reply only; any message a handler broadcasts is
sent separately through the messenger.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.billing import BillingService
from ..core.config import get_settings
from ..core.security import generate_setup_token
from ..integrations.slack.client import SlackApiError, SlackWebClient
from ..integrations.slack.directory import ExternalIdentity
from ..integrations.slack.messages import SlackBlocks, SlackMessenger
from ..models import Organization, User
from .reconciliation import NewRecord, RecordChanges, SqlDirectoryStore, fallback_email
from .tasks import SETUP_REMINDER, enqueue_task
from .user_sync import latest_sync_runs

logger = logging.getLogger(__name__)
settings = get_settings()


# =============================================================================
# TYPES
# =============================================================================


class Visibility(str, Enum):
    """Who sees a reply."""

    EPHEMERAL = "ephemeral"
    IN_CHANNEL = "in_channel"


@dataclass
class InteractionReply:
    """Acknowledgement returned to Slack for one interaction."""

    text: str = ""
    blocks: list[dict] | None = None
    visibility: Visibility = Visibility.EPHEMERAL
    replace_original: bool | None = None

    def to_slack(self) -> dict[str, Any]:
        body: dict[str, Any] = {"response_type": self.visibility.value, "text": self.text}
        if self.blocks:
            body["blocks"] = self.blocks
        if self.replace_original is not None:
            body["replace_original"] = self.replace_original
        return body


@dataclass
class InteractionContext:
    """Everything a handler may need about the inbound event."""

    session: AsyncSession
    organization: Organization
    slack_user_id: str
    arguments: str = ""
    channel_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    client_factory: Callable[[], SlackWebClient | None] = lambda: None

    async def find_user(self) -> User | None:
        result = await self.session.execute(
            select(User).where(
                User.organization_id == self.organization.id,
                User.slack_user_id == self.slack_user_id,
            )
        )
        return result.scalar_one_or_none()


Handler = Callable[[InteractionContext], Awaitable[InteractionReply]]


# =============================================================================
# ROUTER
# =============================================================================


class InteractionRouter:
    """Registration maps from command/action/callback ids to handlers."""

    def __init__(self):
        self._commands: dict[tuple[str, str | None], Handler] = {}
        self._actions: dict[str, Handler] = {}
        self._callbacks: dict[str, Handler] = {}

    def command(self, name: str, subcommand: str | None = None) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            key = (name.lower(), subcommand.lower() if subcommand else None)
            self._commands[key] = handler
            return handler

        return decorator

    def action(self, action_id: str) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            self._actions[action_id] = handler
            return handler

        return decorator

    def callback(self, callback_id: str) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            self._callbacks[callback_id] = handler
            return handler

        return decorator

    async def dispatch_command(
        self, context: InteractionContext, command: str, text: str
    ) -> InteractionReply:
        """`/pulse join now` tries ("/pulse", "join") then ("/pulse", None)."""
        command = command.lower()
        parts = text.strip().split(maxsplit=1)
        subcommand = parts[0].lower() if parts else None

        handler = self._commands.get((command, subcommand)) if subcommand else None
        if handler is not None:
            context.arguments = parts[1] if len(parts) > 1 else ""
        else:
            handler = self._commands.get((command, None))
            context.arguments = text.strip()

        if handler is None:
            logger.info(f"Unknown command {command} {subcommand or ''}".rstrip())
            return InteractionReply(
                text=f"Sorry, I don't know `{f'{command} {text}'.strip()}`.",
                blocks=SlackBlocks.help_message(),
            )
        return await handler(context)

    async def dispatch_interaction(
        self, context: InteractionContext, payload: dict[str, Any]
    ) -> InteractionReply | None:
        """Route block actions by action_id, everything else by callback_id."""
        context.payload = payload
        interaction_type = payload.get("type")

        if interaction_type == "block_actions":
            for action in payload.get("actions", []):
                handler = self._actions.get(action.get("action_id", ""))
                if handler is not None:
                    context.arguments = action.get("value") or ""
                    return await handler(context)
            return None

        callback_id = payload.get("callback_id") or (payload.get("view") or {}).get("callback_id")
        handler = self._callbacks.get(callback_id or "")
        if handler is None:
            logger.debug(f"No handler for {interaction_type} callback {callback_id!r}")
            return None
        return await handler(context)


router = InteractionRouter()


# =============================================================================
# COMMANDS
# =============================================================================


@router.command("/pulse")
@router.command("/pulse", "help")
async def show_help(context: InteractionContext) -> InteractionReply:
    return InteractionReply(text="Team Pulse commands", blocks=SlackBlocks.help_message())


@router.command("/pulse", "whoami")
async def show_directory_record(context: InteractionContext) -> InteractionReply:
    user = await context.find_user()
    if user is None:
        return InteractionReply(
            text="You're not in the team directory yet. Run `/pulse join` to add yourself."
        )

    status = "active" if user.is_active else "deactivated"
    return InteractionReply(
        text=f"You're *{user.name}* ({user.email}), {user.role.value}, {status}."
    )


@router.command("/pulse", "join")
@router.callback("join_directory")
async def join_directory(context: InteractionContext) -> InteractionReply:
    """Create a directory record on first interaction. Never runs a full sync."""
    existing = await context.find_user()
    if existing is not None:
        if existing.is_active:
            return InteractionReply(text="You're already in the team directory. :white_check_mark:")
        return InteractionReply(
            text=(
                "Your directory record is deactivated. Rejoin the team channel "
                "or ask an admin to reactivate you."
            )
        )

    client = context.client_factory()
    if client is None:
        return InteractionReply(text=":warning: This workspace has no Slack bot token configured.")

    async with client:
        try:
            profile = await client.users_info(context.slack_user_id)
            identity = ExternalIdentity.from_slack_user(profile["user"])
        except (SlackApiError, KeyError) as e:
            logger.warning(f"Profile lookup for {context.slack_user_id} failed: {e}")
            return InteractionReply(text="I couldn't read your Slack profile. Please try again later.")

        if not identity.is_active:
            return InteractionReply(text="Bots and deactivated accounts can't join the directory.")

        organization = context.organization
        org_id, org_slug = organization.id, organization.slug
        store = SqlDirectoryStore(context.session)
        email = (identity.email or fallback_email(identity.external_id)).lower()

        result = await context.session.execute(
            select(User).where(User.organization_id == org_id, User.email == email)
        )
        by_email = result.scalar_one_or_none()
        if by_email is not None and not by_email.slack_user_id:
            await store.update_record(
                org_id, by_email.id, RecordChanges(external_id=identity.external_id)
            )
            logger.info(f"Linked Slack user {identity.external_id} to existing user {by_email.id}")
            return InteractionReply(text="Linked your Slack account to your existing directory record.")
        if by_email is not None:
            return InteractionReply(
                text=":warning: Your email is already linked to a different Slack account. Ask an admin for help."
            )

        setup = generate_setup_token()
        created = await store.create_record(
            org_id,
            NewRecord(
                external_id=identity.external_id,
                email=email,
                name=identity.display_name,
                setup_token_hash=setup.token_hash,
                setup_token_expires_at=setup.expires_at,
            ),
        )
        logger.info(f"Created user {created.id} for Slack member {identity.external_id} on first interaction")

        try:
            await BillingService(context.session).handle_user_addition(
                organization, 1, reason="slack_join"
            )
        except Exception as e:
            logger.error(f"Billing addition failed for org {org_slug}: {e}")

        setup_url = f"{settings.app_base_url.rstrip('/')}/setup?token={setup.token}"
        try:
            await SlackMessenger(client).send_direct_message(
                identity.external_id,
                text=f"Welcome to Team Pulse! Finish setting up your account: {setup_url}",
                blocks=SlackBlocks.onboarding(created.name, setup_url, organization.name),
            )
        except Exception as e:
            logger.warning(f"Onboarding message to {identity.external_id} failed: {e}")

    return InteractionReply(text="You're in! Check your DMs for a link to finish setting up. :tada:")


@router.command("/pulse", "sync-status")
async def show_sync_status(context: InteractionContext) -> InteractionReply:
    user = await context.find_user()
    if user is None or not user.is_admin:
        return InteractionReply(text="Only organization admins can see sync status.")

    runs = await latest_sync_runs(context.session, context.organization.id, limit=1)
    if not runs:
        return InteractionReply(text="The directory has not been synced yet.")

    run = runs[0]
    if run.error_code:
        summary = f"failed with `{run.error_code}`"
    else:
        summary = (
            f"created {run.created}, reactivated {run.reactivated}, "
            f"deactivated {run.deactivated}, onboarded {run.onboarded}"
        )
    return InteractionReply(
        text=f"Last sync ({run.trigger.value}) at {run.started_at:%Y-%m-%d %H:%M} UTC: {summary}."
    )


# =============================================================================
# ACTIONS
# =============================================================================


@router.action("remind_setup_later")
async def remind_setup_later(context: InteractionContext) -> InteractionReply:
    user = await context.find_user()
    if user is None:
        return InteractionReply(text="I couldn't find your directory record.", replace_original=False)

    hours = settings.setup_reminder_delay_hours
    await enqueue_task(
        context.session,
        context.organization.id,
        SETUP_REMINDER,
        {"user_id": str(user.id)},
        delay=timedelta(hours=hours),
    )
    await context.session.commit()
    return InteractionReply(
        text=f"Okay! I'll remind you in {hours} hours. :alarm_clock:",
        replace_original=False,
    )


@router.action("dismiss")
async def dismiss(context: InteractionContext) -> InteractionReply:
    return InteractionReply(text="Dismissed.", replace_original=True)
