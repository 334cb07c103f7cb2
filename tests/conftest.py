"""Shared fixtures: in-memory database, organizations, and a fake Slack API."""

import os

# Settings are read at import time; configure the test environment first
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SLACK_SIGNING_SECRET"] = "test-signing-secret"
os.environ["SLACK_CLIENT_ID"] = "1111.2222"
os.environ["SLACK_CLIENT_SECRET"] = "test-client-secret"
os.environ["APP_BASE_URL"] = "https://pulse.example.com"
os.environ["FRONTEND_URL"] = "https://pulse.example.com"
os.environ["ONBOARDING_SEND_DELAY_SECONDS"] = "0"
os.environ["SESSION_COOKIE_SECURE"] = "false"
for name in ("SLACK_BOT_TOKEN", "SLACK_SYNC_CHANNEL_ID", "SLACK_PRIVATE_CHANNEL_ID", "ENCRYPTION_KEY", "STRIPE_SECRET_KEY"):
    os.environ.pop(name, None)

from collections.abc import Callable
from typing import Any
import json
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from pulse_identity.core.database import build_session_factory
from pulse_identity.integrations.slack.client import SlackWebClient
from pulse_identity.models import Base, Organization, User, UserRole

SYNC_CHANNEL_ID = "C0SYNC0001"


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def organization(session: AsyncSession) -> Organization:
    org = Organization(
        id=uuid4(),
        name="Acme",
        slug="acme",
        slack_team_id="T0ACME001",
        slack_team_name="Acme HQ",
        slack_bot_token="xoxb-acme",
        slack_sync_channel_id=SYNC_CHANNEL_ID,
    )
    session.add(org)
    await session.commit()
    return org


async def add_user(
    session: AsyncSession,
    organization: Organization,
    *,
    slack_user_id: str | None,
    email: str,
    name: str = "Someone",
    role: UserRole = UserRole.MEMBER,
    is_active: bool = True,
    password_hash: str | None = None,
) -> User:
    user = User(
        id=uuid4(),
        organization_id=organization.id,
        slack_user_id=slack_user_id,
        email=email,
        name=name,
        role=role,
        is_active=is_active,
        password_hash=password_hash,
    )
    session.add(user)
    await session.commit()
    return user


# =============================================================================
# FAKE SLACK WEB API
# =============================================================================


def slack_user(
    user_id: str,
    name: str | None = None,
    email: str | None = "default",
    *,
    deleted: bool = False,
    is_bot: bool = False,
) -> dict[str, Any]:
    if email == "default":
        email = f"{user_id.lower()}@acme.test"
    profile: dict[str, Any] = {"real_name": name or f"User {user_id}"}
    if email:
        profile["email"] = email
    return {
        "id": user_id,
        "name": user_id.lower(),
        "real_name": name or f"User {user_id}",
        "deleted": deleted,
        "is_bot": is_bot,
        "profile": profile,
    }


class FakeSlack:
    """Answers Slack Web API calls from in-memory state and records them."""

    def __init__(
        self,
        members: list[dict[str, Any]] | None = None,
        channel_id: str = SYNC_CHANNEL_ID,
    ):
        self.channel_id = channel_id
        self.users: dict[str, dict[str, Any]] = {}
        self.member_ids: list[str] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.posted: list[dict[str, Any]] = []
        self.errors: dict[str, str] = {}
        self.user_errors: dict[str, str] = {}
        self.member_pages: list[tuple[list[str], str]] | None = None
        self.channels: list[dict[str, Any]] = [{"id": channel_id, "name": "team-pulse"}]
        for member in members or []:
            self.add_member(member)

    def add_member(self, user: dict[str, Any]) -> None:
        self.users[user["id"]] = user
        if user["id"] not in self.member_ids:
            self.member_ids.append(user["id"])

    def remove_member(self, user_id: str) -> None:
        self.member_ids.remove(user_id)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _members_page(self, cursor: str) -> dict[str, Any]:
        if self.member_pages is None:
            return {"ok": True, "members": list(self.member_ids), "response_metadata": {"next_cursor": ""}}
        index = int(cursor or 0)
        ids, next_cursor = self.member_pages[index]
        return {"ok": True, "members": ids, "response_metadata": {"next_cursor": next_cursor}}

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        params: dict[str, Any] = dict(request.url.params)
        if request.method == "POST" and request.content:
            params.update(json.loads(request.content))
        self.calls.append((method, params))

        if method in self.errors:
            return httpx.Response(200, json={"ok": False, "error": self.errors[method]})

        if method == "conversations.info":
            if params.get("channel") != self.channel_id:
                return httpx.Response(200, json={"ok": False, "error": "channel_not_found"})
            return httpx.Response(200, json={"ok": True, "channel": {"id": self.channel_id}})

        if method == "conversations.list":
            return httpx.Response(200, json={"ok": True, "channels": self.channels})

        if method == "conversations.members":
            return httpx.Response(200, json=self._members_page(params.get("cursor", "")))

        if method == "users.info":
            user_id = params.get("user", "")
            if user_id in self.user_errors:
                return httpx.Response(200, json={"ok": False, "error": self.user_errors[user_id]})
            user = self.users.get(user_id) or slack_user(user_id)
            return httpx.Response(200, json={"ok": True, "user": user})

        if method == "conversations.open":
            return httpx.Response(200, json={"ok": True, "channel": {"id": f"D{params['users']}"}})

        if method == "chat.postMessage":
            self.posted.append(params)
            return httpx.Response(200, json={"ok": True, "ts": "1700000000.000100"})

        return httpx.Response(404)

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def client(self, token: str = "xoxb-acme") -> SlackWebClient:
        return SlackWebClient(token, http_client=self.http_client())


@pytest.fixture
def fake_slack() -> FakeSlack:
    return FakeSlack()


def mock_client(handler: Callable[[httpx.Request], httpx.Response], token: str = "xoxb-test") -> SlackWebClient:
    return SlackWebClient(token, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
