"""
Tests for Slack slash commands and interactive payloads.

These tests verify:
1. Routing by (command, subcommand), action id and callback id
2. Unknown commands fall back to help, never to an error
3. Handlers act on the directory and reply with the right visibility
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse_identity.models import (
    BillingEvent,
    Organization,
    ScheduledTask,
    SyncRun,
    SyncTrigger,
    User,
    UserRole,
)
from pulse_identity.services.interactions import (
    InteractionContext,
    InteractionReply,
    InteractionRouter,
    Visibility,
    router,
)
from pulse_identity.services.tasks import SETUP_REMINDER

from conftest import FakeSlack, add_user, slack_user


def make_context(session, organization, fake_slack: FakeSlack | None = None, user_id: str = "U0ALICE01"):
    return InteractionContext(
        session=session,
        organization=organization,
        slack_user_id=user_id,
        channel_id="C0GENERAL1",
        client_factory=(lambda: fake_slack.client()) if fake_slack else (lambda: None),
    )


# =============================================================================
# TEST: ROUTER
# =============================================================================


class TestInteractionRouter:
    @pytest.fixture
    def test_router(self) -> InteractionRouter:
        test_router = InteractionRouter()

        @test_router.command("/echo")
        async def echo(context):
            return InteractionReply(text=f"echo:{context.arguments}", visibility=Visibility.IN_CHANNEL)

        @test_router.command("/echo", "loud")
        async def loud(context):
            return InteractionReply(text=context.arguments.upper())

        @test_router.action("approve")
        async def approve(context):
            return InteractionReply(text=f"approved {context.arguments}", replace_original=True)

        @test_router.callback("feedback_modal")
        async def feedback(context):
            return InteractionReply(text="thanks")

        return test_router

    @pytest.fixture
    def context(self) -> InteractionContext:
        return InteractionContext(session=None, organization=None, slack_user_id="U0ALICE01")

    async def test_subcommand_wins(self, test_router, context):
        reply = await test_router.dispatch_command(context, "/echo", "LOUD hello there")
        assert reply.text == "HELLO THERE"

    async def test_falls_back_to_bare_command(self, test_router, context):
        reply = await test_router.dispatch_command(context, "/echo", "hello there")
        assert reply.text == "echo:hello there"
        assert reply.to_slack()["response_type"] == "in_channel"

    async def test_unknown_command_gets_help(self, test_router, context):
        reply = await test_router.dispatch_command(context, "/nope", "x")

        assert "/nope x" in reply.text
        assert reply.blocks
        assert reply.to_slack()["response_type"] == "ephemeral"

    async def test_block_action_by_id(self, test_router, context):
        payload = {"type": "block_actions", "actions": [{"action_id": "approve", "value": "req-7"}]}

        reply = await test_router.dispatch_interaction(context, payload)

        assert reply.text == "approved req-7"
        assert reply.to_slack()["replace_original"] is True

    async def test_view_callback(self, test_router, context):
        payload = {"type": "view_submission", "view": {"callback_id": "feedback_modal"}}
        reply = await test_router.dispatch_interaction(context, payload)
        assert reply.text == "thanks"

    async def test_unmatched_interaction(self, test_router, context):
        assert await test_router.dispatch_interaction(context, {"type": "block_actions", "actions": []}) is None
        assert await test_router.dispatch_interaction(context, {"type": "shortcut", "callback_id": "x"}) is None


# =============================================================================
# TEST: COMMAND HANDLERS
# =============================================================================


class TestCommands:
    async def test_bare_command_shows_help(self, session: AsyncSession, organization: Organization):
        reply = await router.dispatch_command(make_context(session, organization), "/pulse", "")
        assert reply.blocks
        assert reply.visibility == Visibility.EPHEMERAL

    async def test_whoami_unknown_user(self, session: AsyncSession, organization: Organization):
        reply = await router.dispatch_command(make_context(session, organization), "/pulse", "whoami")
        assert "/pulse join" in reply.text

    async def test_whoami_known_user(self, session: AsyncSession, organization: Organization):
        await add_user(session, organization, slack_user_id="U0ALICE01", email="alice@acme.test", name="Alice")

        reply = await router.dispatch_command(make_context(session, organization), "/pulse", "whoami")

        assert "Alice" in reply.text
        assert "active" in reply.text

    async def test_join_creates_record_and_sends_dm(
        self, session: AsyncSession, organization: Organization, fake_slack: FakeSlack
    ):
        fake_slack.users["U0ALICE01"] = slack_user("U0ALICE01", "Alice", "Alice@Acme.test")

        reply = await router.dispatch_command(make_context(session, organization, fake_slack), "/pulse", "join")

        assert reply.text.startswith("You're in!")
        assert reply.visibility == Visibility.EPHEMERAL
        user = (await session.execute(select(User))).scalar_one()
        assert user.slack_user_id == "U0ALICE01"
        assert user.email == "alice@acme.test"
        assert user.password_hash is None
        assert fake_slack.posted[0]["channel"] == "DU0ALICE01"
        events = (await session.execute(select(BillingEvent))).scalars().all()
        assert [e.reason for e in events] == ["slack_join"]

    async def test_join_when_already_present(
        self, session: AsyncSession, organization: Organization, fake_slack: FakeSlack
    ):
        await add_user(session, organization, slack_user_id="U0ALICE01", email="alice@acme.test")

        reply = await router.dispatch_command(make_context(session, organization, fake_slack), "/pulse", "join")

        assert "already" in reply.text
        assert fake_slack.calls == []

    async def test_join_links_existing_email(
        self, session: AsyncSession, organization: Organization, fake_slack: FakeSlack
    ):
        existing = await add_user(session, organization, slack_user_id=None, email="u0alice01@acme.test")

        reply = await router.dispatch_command(make_context(session, organization, fake_slack), "/pulse", "join")

        assert "Linked" in reply.text
        users = (await session.execute(select(User).execution_options(populate_existing=True))).scalars().all()
        assert len(users) == 1
        assert users[0].id == existing.id
        assert users[0].slack_user_id == "U0ALICE01"

    async def test_join_callback_routes_to_same_handler(
        self, session: AsyncSession, organization: Organization, fake_slack: FakeSlack
    ):
        reply = await router.dispatch_interaction(
            make_context(session, organization, fake_slack), {"type": "shortcut", "callback_id": "join_directory"}
        )
        assert reply.text.startswith("You're in!")

    async def test_join_without_bot_token(self, session: AsyncSession, organization: Organization):
        reply = await router.dispatch_command(make_context(session, organization), "/pulse", "join")
        assert "no Slack bot token" in reply.text

    async def test_sync_status_requires_admin(self, session: AsyncSession, organization: Organization):
        await add_user(session, organization, slack_user_id="U0ALICE01", email="alice@acme.test")

        reply = await router.dispatch_command(make_context(session, organization), "/pulse", "sync-status")

        assert "Only organization admins" in reply.text

    async def test_sync_status_for_admin(self, session: AsyncSession, organization: Organization):
        await add_user(
            session, organization, slack_user_id="U0ALICE01", email="alice@acme.test", role=UserRole.ADMIN
        )
        session.add(
            SyncRun(
                organization_id=organization.id,
                trigger=SyncTrigger.SCHEDULED,
                created=2,
                deactivated=1,
                started_at=datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc),
            )
        )
        await session.commit()

        reply = await router.dispatch_command(make_context(session, organization), "/pulse", "sync-status")

        assert "created 2" in reply.text
        assert "deactivated 1" in reply.text
        assert "scheduled" in reply.text


# =============================================================================
# TEST: ACTION HANDLERS
# =============================================================================


class TestActions:
    async def test_remind_later_enqueues_task(self, session: AsyncSession, organization: Organization):
        user = await add_user(session, organization, slack_user_id="U0ALICE01", email="alice@acme.test")
        payload = {"type": "block_actions", "actions": [{"action_id": "remind_setup_later", "value": "setup"}]}

        before = datetime.now(timezone.utc)
        reply = await router.dispatch_interaction(make_context(session, organization), payload)

        assert "remind you in 24 hours" in reply.text
        assert reply.to_slack()["replace_original"] is False
        task = (await session.execute(select(ScheduledTask))).scalar_one()
        assert task.kind == SETUP_REMINDER
        assert task.payload == {"user_id": str(user.id)}
        run_at = task.run_at if task.run_at.tzinfo else task.run_at.replace(tzinfo=timezone.utc)
        assert run_at >= before + timedelta(hours=24)

    async def test_dismiss_replaces_original(self, session: AsyncSession, organization: Organization):
        payload = {"type": "block_actions", "actions": [{"action_id": "dismiss"}]}

        reply = await router.dispatch_interaction(make_context(session, organization), payload)

        assert reply.text == "Dismissed."
        assert reply.to_slack()["replace_original"] is True
