"""
Directory Sync: the single entry point used by every sync trigger.

The scheduled job, Slack membership events and the admin endpoint all call
sync_organization_directory(), which:

1. Serializes runs per organization (a second trigger waits, then runs)
2. Resolves the bot token and sync channel for the organization
3. Fetches channel members, reconciles the directory, fans out side effects
4. Records the run in sync_runs and returns a ReconciliationOutcome

Unexpected exceptions never escape; they become a `sync_error` outcome.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any
from uuid import UUID
import asyncio
import logging

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.billing import BillingService
from ..core.config import get_settings
from ..core.security import CredentialError, decrypt_token
from ..integrations.slack.client import SlackWebClient
from ..integrations.slack.directory import DirectoryFetcher, FetchFailure
from ..integrations.slack.messages import SlackMessenger
from ..models import Organization, SyncRun, SyncTrigger
from .reconciliation import (
    ReconciliationEngine,
    ReconciliationOutcome,
    SqlDirectoryStore,
    SyncErrorInfo,
)
from .side_effects import SideEffectCoordinator

logger = logging.getLogger(__name__)
settings = get_settings()

SYNC_ERROR_CODE = "sync_error"
MEMBERSHIP_EVENTS = frozenset({"member_joined_channel", "member_left_channel"})


# =============================================================================
# PER-ORGANIZATION SERIALIZATION
# =============================================================================


_org_locks: dict[UUID, asyncio.Lock] = {}


def organization_lock(organization_id: UUID) -> asyncio.Lock:
    """One lock per organization for the life of the process."""
    lock = _org_locks.get(organization_id)
    if lock is None:
        lock = _org_locks[organization_id] = asyncio.Lock()
    return lock


# =============================================================================
# RESOLUTION HELPERS
# =============================================================================


def resolve_bot_token(organization: Organization) -> str | None:
    """Organization's own token first, then the global fallback."""
    if organization.slack_bot_token:
        return decrypt_token(organization.slack_bot_token)
    return settings.slack_bot_token or None


def resolve_sync_channel(organization: Organization) -> str:
    return (
        organization.slack_sync_channel_id
        or settings.slack_sync_channel_id
        or organization.slack_sync_channel_name
        or settings.slack_sync_channel_name
    )


def build_slack_client(
    organization: Organization, http_client: httpx.AsyncClient | None = None
) -> SlackWebClient | None:
    token = resolve_bot_token(organization)
    if not token:
        return None
    return SlackWebClient(
        token,
        timeout=settings.slack_http_timeout_seconds,
        http_client=http_client,
    )


def failure_to_error(failure: FetchFailure) -> SyncErrorInfo:
    data = failure.to_dict()
    return SyncErrorInfo(
        code=data["error_code"],
        message=data["message"],
        remediation=data["remediation"],
        detail=data["detail"],
    )


def sync_error(exc: BaseException) -> SyncErrorInfo:
    return SyncErrorInfo(
        code=SYNC_ERROR_CODE,
        message="Directory sync failed unexpectedly.",
        remediation="Check the application logs for this run and retry.",
        detail={"exception": type(exc).__name__, "error": str(exc)[:500]},
    )


# =============================================================================
# SYNC
# =============================================================================


async def sync_organization_directory(
    session: AsyncSession,
    organization: Organization,
    trigger: SyncTrigger = SyncTrigger.MANUAL,
    *,
    fetcher: DirectoryFetcher | None = None,
    coordinator: SideEffectCoordinator | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ReconciliationOutcome:
    """Run one full sync for `organization`. Never raises."""
    lock = organization_lock(organization.id)
    if lock.locked():
        logger.info(f"Sync for org {organization.slug} already running; waiting ({trigger.value})")

    async with lock:
        return await _run_sync(
            session,
            organization,
            trigger,
            fetcher=fetcher,
            coordinator=coordinator,
            http_client=http_client,
        )


async def _run_sync(
    session: AsyncSession,
    organization: Organization,
    trigger: SyncTrigger,
    *,
    fetcher: DirectoryFetcher | None,
    coordinator: SideEffectCoordinator | None,
    http_client: httpx.AsyncClient | None,
) -> ReconciliationOutcome:
    started_at = datetime.now(timezone.utc)
    # A rolled-back record write expires ORM state; keep plain copies for logging
    org_id, org_slug = organization.id, organization.slug
    logger.info(f"Starting user sync for organization {org_slug} ({trigger.value})")

    client: SlackWebClient | None = None
    try:
        if fetcher is None or coordinator is None:
            client = build_slack_client(organization, http_client)
        if fetcher is None:
            fetcher = DirectoryFetcher(client, max_pages=settings.slack_max_pages)
        if coordinator is None:
            coordinator = SideEffectCoordinator(
                BillingService(session),
                SlackMessenger(client) if client else None,
                app_base_url=settings.app_base_url,
                send_delay_seconds=settings.onboarding_send_delay_seconds,
                private_channel_id=settings.slack_private_channel_id,
            )

        channel = resolve_sync_channel(organization)
        fetched = await fetcher.list_channel_members(channel)

        if not fetched.ok:
            error = failure_to_error(fetched.failure)
            logger.warning(
                f"User sync for {org_slug} stopped: {error.code} - {error.message}"
            )
            outcome = ReconciliationOutcome.failed(error)
            await coordinator.report_failure(organization, error)
        else:
            engine = ReconciliationEngine(SqlDirectoryStore(session))
            result = await engine.reconcile(
                org_id,
                fetched.members,
                protected_external_ids=fetched.skipped_external_ids,
            )
            await session.refresh(organization)
            outcome = await coordinator.apply(organization, result)
            organization.last_synced_at = datetime.now(timezone.utc)

    except CredentialError as e:
        logger.error(f"Stored Slack token for {org_slug} is unusable: {e}")
        outcome = ReconciliationOutcome.failed(
            SyncErrorInfo(
                code="invalid_auth",
                message="The stored Slack bot token could not be decrypted.",
                remediation="Reinstall the Slack app to store a fresh token.",
            )
        )
    except Exception as e:
        logger.exception(f"User sync for {org_slug} crashed")
        outcome = ReconciliationOutcome.failed(sync_error(e))
    finally:
        if client is not None:
            await client.close()

    await _record_run(session, org_id, org_slug, trigger, outcome, started_at)
    logger.info(f"User sync completed for organization {org_slug}: {outcome.to_dict()}")
    return outcome


async def _record_run(
    session: AsyncSession,
    organization_id: UUID,
    organization_slug: str,
    trigger: SyncTrigger,
    outcome: ReconciliationOutcome,
    started_at: datetime,
) -> None:
    run = SyncRun(
        organization_id=organization_id,
        trigger=trigger,
        created=outcome.created,
        reactivated=outcome.reactivated,
        deactivated=outcome.deactivated,
        onboarded=outcome.onboarded,
        onboarding_errors=outcome.onboarding_errors,
        error_code=outcome.error.code if outcome.error else None,
        error_detail=outcome.error.to_dict() if outcome.error else None,
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
    )
    session.add(run)
    try:
        await session.commit()
    except Exception:
        # History is informational; the directory changes are already committed
        await session.rollback()
        logger.exception(f"Could not record sync run for {organization_slug}")


async def latest_sync_runs(
    session: AsyncSession, organization_id: UUID, limit: int = 10
) -> list[SyncRun]:
    result = await session.execute(
        select(SyncRun)
        .where(SyncRun.organization_id == organization_id)
        .order_by(SyncRun.started_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# =============================================================================
# MEMBERSHIP EVENTS
# =============================================================================


async def get_organization_by_team(session: AsyncSession, team_id: str) -> Organization | None:
    result = await session.execute(
        select(Organization).where(Organization.slack_team_id == team_id)
    )
    return result.scalars().first()


def is_sync_channel_event(organization: Organization, event: dict[str, Any]) -> bool:
    """Membership events only matter for the configured sync channel.

    When the channel is configured by name only its id is unknown here, so
    every membership event triggers a sync.
    """
    if event.get("type") not in MEMBERSHIP_EVENTS:
        return False
    channel_id = organization.slack_sync_channel_id or settings.slack_sync_channel_id
    return channel_id is None or event.get("channel") == channel_id


async def handle_channel_membership_event(
    session: AsyncSession,
    organization: Organization,
    event: dict[str, Any],
    sync: Callable[..., Awaitable[ReconciliationOutcome]] = sync_organization_directory,
) -> ReconciliationOutcome | None:
    """Run a sync for a member joining or leaving the sync channel."""
    if not is_sync_channel_event(organization, event):
        logger.debug(f"Ignoring {event.get('type')} in {event.get('channel')}")
        return None

    logger.info(
        f"User {event.get('user')} {event['type'].replace('member_', '').replace('_channel', '')} "
        f"channel {event.get('channel')}; triggering user sync for {organization.slug}"
    )
    return await sync(session, organization, SyncTrigger.MEMBERSHIP_EVENT)
