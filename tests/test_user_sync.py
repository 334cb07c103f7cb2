"""
Tests for the directory sync entry point.

These tests verify:
1. A full run fetches, reconciles, bills, onboards and records history
2. Fetch failures and crashes become structured outcomes, never exceptions
3. Runs for one organization are serialized
4. Only membership events for the sync channel trigger a run
"""

import asyncio

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse_identity.integrations.slack.directory import DirectoryFetchResult, NoMembers
from pulse_identity.models import BillingEvent, BillingEventType, Organization, SyncRun, SyncTrigger, User
from pulse_identity.services.user_sync import (
    handle_channel_membership_event,
    is_sync_channel_event,
    latest_sync_runs,
    organization_lock,
    resolve_sync_channel,
    sync_organization_directory,
)

from conftest import SYNC_CHANNEL_ID, FakeSlack, add_user, slack_user


class ExplodingFetcher:
    async def list_channel_members(self, channel):
        raise RuntimeError("connection reset by peer")


class SlowEmptyFetcher:
    """Tracks how many fetches overlap."""

    def __init__(self):
        self.active = 0
        self.max_active = 0
        self.calls = 0

    async def list_channel_members(self, channel):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return DirectoryFetchResult.failed(NoMembers(channel_id=channel), channel_id=channel)


class SilentCoordinator:
    async def report_failure(self, organization, error):
        return False


async def all_users(session: AsyncSession) -> dict[str, User]:
    result = await session.execute(select(User).execution_options(populate_existing=True))
    return {u.slack_user_id: u for u in result.scalars().all()}


# =============================================================================
# TEST: FULL RUN
# =============================================================================


class TestSyncOrganizationDirectory:
    async def test_end_to_end(self, session: AsyncSession, organization: Organization, fake_slack: FakeSlack):
        await add_user(session, organization, slack_user_id="U0LEAVE01", email="leaver@acme.test")
        fake_slack.add_member(slack_user("U0ALICE01", "Alice"))
        fake_slack.add_member(slack_user("U0BOB0001", "Bob"))

        outcome = await sync_organization_directory(
            session, organization, SyncTrigger.MANUAL, http_client=fake_slack.http_client()
        )

        assert outcome.ok
        assert (outcome.created, outcome.reactivated, outcome.deactivated) == (2, 0, 1)
        assert outcome.onboarded == 2
        assert outcome.onboarding_errors == 0

        users = await all_users(session)
        assert users["U0LEAVE01"].is_active is False
        assert users["U0ALICE01"].password_hash is None
        assert users["U0ALICE01"].setup_token_hash

        # One DM each, carrying a setup link
        assert [p["channel"] for p in fake_slack.posted] == ["DU0ALICE01", "DU0BOB0001"]
        assert "/setup?token=" in fake_slack.posted[0]["text"]

        events = (await session.execute(select(BillingEvent))).scalars().all()
        assert sorted((e.event_type, e.user_count) for e in events) == [
            (BillingEventType.USER_ADDED, 2),
            (BillingEventType.USER_REMOVED, 1),
        ]

        runs = await latest_sync_runs(session, organization.id)
        assert len(runs) == 1
        assert runs[0].trigger == SyncTrigger.MANUAL
        assert runs[0].created == 2
        assert runs[0].error_code is None
        assert organization.last_synced_at is not None

    async def test_second_run_changes_nothing(
        self, session: AsyncSession, organization: Organization, fake_slack: FakeSlack
    ):
        fake_slack.add_member(slack_user("U0ALICE01", "Alice"))

        await sync_organization_directory(session, organization, http_client=fake_slack.http_client())
        second = await sync_organization_directory(session, organization, http_client=fake_slack.http_client())

        assert (second.created, second.reactivated, second.deactivated, second.onboarded) == (0, 0, 0, 0)
        assert len(fake_slack.posted) == 1

    async def test_fetch_failure_leaves_directory_untouched(
        self, session: AsyncSession, organization: Organization, fake_slack: FakeSlack
    ):
        await add_user(session, organization, slack_user_id="U0STAYS01", email="stays@acme.test")
        fake_slack.errors["conversations.info"] = "missing_scope"

        outcome = await sync_organization_directory(session, organization, http_client=fake_slack.http_client())

        assert not outcome.ok
        assert outcome.error.code == "missing_scope"
        assert outcome.deactivated == 0
        assert (await all_users(session))["U0STAYS01"].is_active

        runs = await latest_sync_runs(session, organization.id)
        assert runs[0].error_code == "missing_scope"
        assert runs[0].error_detail["remediation"]

    async def test_missing_token(self, session: AsyncSession, organization: Organization):
        organization.slack_bot_token = None
        await session.commit()

        outcome = await sync_organization_directory(session, organization)

        assert outcome.error.code == "missing_token"

    async def test_crash_becomes_sync_error(self, session: AsyncSession, organization: Organization):
        outcome = await sync_organization_directory(
            session, organization, fetcher=ExplodingFetcher(), coordinator=SilentCoordinator()
        )

        assert outcome.error.code == "sync_error"
        assert outcome.error.detail["exception"] == "RuntimeError"
        runs = (await session.execute(select(SyncRun))).scalars().all()
        assert runs[0].error_code == "sync_error"

    async def test_concurrent_runs_are_serialized(self, session: AsyncSession, organization: Organization):
        fetcher = SlowEmptyFetcher()

        outcomes = await asyncio.gather(
            sync_organization_directory(session, organization, fetcher=fetcher, coordinator=SilentCoordinator()),
            sync_organization_directory(session, organization, fetcher=fetcher, coordinator=SilentCoordinator()),
        )

        assert fetcher.calls == 2
        assert fetcher.max_active == 1
        assert all(o.error.code == "no_members" for o in outcomes)

    def test_lock_is_per_organization(self, organization: Organization):
        assert organization_lock(organization.id) is organization_lock(organization.id)

    def test_channel_id_preferred_over_name(self, organization: Organization):
        assert resolve_sync_channel(organization) == SYNC_CHANNEL_ID
        organization.slack_sync_channel_id = None
        assert resolve_sync_channel(organization) == "team-pulse"


# =============================================================================
# TEST: MEMBERSHIP EVENTS
# =============================================================================


class TestMembershipEvents:
    def test_only_sync_channel_membership_counts(self, organization: Organization):
        assert is_sync_channel_event(organization, {"type": "member_joined_channel", "channel": SYNC_CHANNEL_ID})
        assert is_sync_channel_event(organization, {"type": "member_left_channel", "channel": SYNC_CHANNEL_ID})
        assert not is_sync_channel_event(organization, {"type": "member_joined_channel", "channel": "C0RANDOM01"})
        assert not is_sync_channel_event(organization, {"type": "message", "channel": SYNC_CHANNEL_ID})

    async def test_event_triggers_membership_sync(self, session: AsyncSession, organization: Organization):
        calls = []

        async def fake_sync(session, organization, trigger):
            calls.append(trigger)

        await handle_channel_membership_event(
            session,
            organization,
            {"type": "member_joined_channel", "channel": SYNC_CHANNEL_ID, "user": "U0NEW0001"},
            sync=fake_sync,
        )
        await handle_channel_membership_event(
            session,
            organization,
            {"type": "member_joined_channel", "channel": "C0RANDOM01", "user": "U0NEW0001"},
            sync=fake_sync,
        )

        assert calls == [SyncTrigger.MEMBERSHIP_EVENT]
