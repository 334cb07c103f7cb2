"""
HTTP-level tests for the FastAPI application.

The app runs in-process over httpx.ASGITransport. The database dependency is
pointed at the test engine and the OpenID client is replaced by a fake, so no
request leaves the process.
"""

from urllib.parse import parse_qs, urlencode, urlparse
import hashlib
import hmac
import json
import time

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from pulse_identity.api import directory as directory_api
from pulse_identity.api import slack as slack_api
from pulse_identity.core.config import get_settings
from pulse_identity.core.database import get_session
from pulse_identity.core.dependencies import get_oidc_client
from pulse_identity.integrations.slack.oidc import SlackIdentity, TokenSet
from pulse_identity.main import app
from pulse_identity.models import Organization, UserRole
from pulse_identity.services.reconciliation import ReconciliationOutcome, SyncErrorInfo

from conftest import SYNC_CHANNEL_ID, add_user

settings = get_settings()
BASE_URL = "https://pulse.example.com"


class FakeOIDC:
    """Stands in for OIDCClient at the HTTP boundary."""

    def __init__(self):
        self.identity = SlackIdentity(
            sub="U0ALICE01",
            email="alice@acme.test",
            name="Alice",
            slack_user_id="U0ALICE01",
            team_id="T0ACME001",
            team_name="Acme HQ",
        )
        self.exchanged: list[tuple[str, str]] = []

    def build_authorization_url(self, state: str, redirect_uri: str, nonce: str | None = None) -> str:
        query = urlencode({"state": state, "redirect_uri": redirect_uri, "scope": "openid profile email"})
        return f"https://slack.com/openid/connect/authorize?{query}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        self.exchanged.append((code, redirect_uri))
        return TokenSet(id_token="id-token", team_id=self.identity.team_id)

    async def verify_identity_token(self, id_token: str) -> SlackIdentity:
        return self.identity


@pytest.fixture
def oidc() -> FakeOIDC:
    return FakeOIDC()


@pytest.fixture
async def client(session_factory, oidc: FakeOIDC):
    async def override_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_oidc_client] = lambda: oidc
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE_URL) as client:
        yield client
    app.dependency_overrides.clear()


def sign(body: bytes, timestamp: int | None = None) -> dict[str, str]:
    timestamp = timestamp or int(time.time())
    basestring = f"v0:{timestamp}:".encode() + body
    digest = hmac.new(settings.slack_signing_secret.encode(), basestring, hashlib.sha256).hexdigest()
    return {"X-Slack-Request-Timestamp": str(timestamp), "X-Slack-Signature": f"v0={digest}"}


async def start_login(client: httpx.AsyncClient, org: str = "acme") -> str:
    response = await client.get("/api/v1/auth/slack/login", params={"org": org})
    assert response.status_code == 307
    return parse_qs(urlparse(response.headers["location"]).query)["state"][0]


async def sign_in(client: httpx.AsyncClient) -> httpx.Response:
    state = await start_login(client)
    return await client.get("/api/v1/auth/slack/callback", params={"code": "code-1", "state": state})


# =============================================================================
# TEST: HEALTH
# =============================================================================


class TestHealth:
    async def test_health(self, client: httpx.AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["slack_login"] is True


# =============================================================================
# TEST: SIGN IN WITH SLACK
# =============================================================================


class TestSlackLogin:
    async def test_login_redirects_and_sets_cookie(self, client: httpx.AsyncClient, organization: Organization):
        response = await client.get("/api/v1/auth/slack/login", params={"org": "acme"})

        assert response.status_code == 307
        location = urlparse(response.headers["location"])
        assert location.netloc == "slack.com"
        assert len(parse_qs(location.query)["state"][0]) == 64
        assert settings.session_cookie_name in response.cookies

    async def test_unknown_organization(self, client: httpx.AsyncClient, organization: Organization):
        response = await client.get("/api/v1/auth/slack/login", params={"org": "nope"})

        assert response.status_code == 303
        assert response.headers["location"].endswith("/login?error=slack_login_failed")

    async def test_callback_establishes_session(
        self, client: httpx.AsyncClient, organization: Organization, session: AsyncSession, oidc: FakeOIDC
    ):
        await add_user(session, organization, slack_user_id="U0ALICE01", email="alice@acme.test", name="Alice")
        state = await start_login(client)
        pre_login_cookie = client.cookies.get(settings.session_cookie_name)

        response = await client.get("/api/v1/auth/slack/callback", params={"code": "code-1", "state": state})

        assert response.status_code == 303
        assert response.headers["location"] == settings.frontend_url
        # Session id is rotated on login
        assert client.cookies.get(settings.session_cookie_name) != pre_login_cookie
        # The code is exchanged with the redirect URI issued alongside the state
        assert oidc.exchanged[0][0] == "code-1"
        assert oidc.exchanged[0][1].endswith("/api/v1/auth/slack/callback")

        me = await client.get("/api/v1/auth/session")
        assert me.status_code == 200
        body = me.json()
        assert body["authenticated"] is True
        assert body["identity"]["slack_user_id"] == "U0ALICE01"
        assert body["organization"]["slug"] == "acme"
        assert body["user"]["email"] == "alice@acme.test"

    async def test_login_without_directory_record(self, client: httpx.AsyncClient, organization: Organization):
        response = await sign_in(client)
        assert response.status_code == 303

        body = (await client.get("/api/v1/auth/session")).json()
        assert body["user"] is None

    async def test_state_mismatch_is_generic(self, client: httpx.AsyncClient, organization: Organization):
        await start_login(client)

        response = await client.get(
            "/api/v1/auth/slack/callback",
            params={"code": "code-1", "state": "f" * 64},
            headers={"Accept": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {
            "error": "slack_login_failed",
            "message": "We couldn't sign you in with Slack. Please try again.",
        }

    async def test_callback_cannot_be_replayed(self, client: httpx.AsyncClient, organization: Organization):
        state = await start_login(client)
        params = {"code": "code-1", "state": state}
        first = await client.get("/api/v1/auth/slack/callback", params=params)
        await client.post("/api/v1/auth/logout")

        replay = await client.get("/api/v1/auth/slack/callback", params=params)

        assert first.status_code == 303
        assert replay.headers["location"].endswith("/login?error=slack_login_failed")

    async def test_failed_attempt_consumes_state(self, client: httpx.AsyncClient, organization: Organization):
        state = await start_login(client)
        await client.get("/api/v1/auth/slack/callback", params={"code": "c", "state": "wrong"})

        response = await client.get("/api/v1/auth/slack/callback", params={"code": "c", "state": state})

        assert "error=slack_login_failed" in response.headers["location"]

    async def test_slack_error_parameter(self, client: httpx.AsyncClient, organization: Organization, oidc: FakeOIDC):
        state = await start_login(client)

        response = await client.get(
            "/api/v1/auth/slack/callback", params={"error": "access_denied", "state": state}
        )

        assert "error=slack_login_failed" in response.headers["location"]
        assert oidc.exchanged == []

    async def test_workspace_mismatch(self, client: httpx.AsyncClient, organization: Organization, oidc: FakeOIDC):
        oidc.identity = SlackIdentity(
            sub="U0EVE0001", email="eve@other.test", name="Eve", slack_user_id="U0EVE0001", team_id="T0OTHER01"
        )

        response = await sign_in(client)

        assert "error=slack_login_failed" in response.headers["location"]
        assert (await client.get("/api/v1/auth/session")).status_code == 401

    async def test_logout(self, client: httpx.AsyncClient, organization: Organization):
        await sign_in(client)

        response = await client.post("/api/v1/auth/logout")

        assert response.json() == {"ok": True}
        assert (await client.get("/api/v1/auth/session")).status_code == 401

    async def test_login_unavailable_without_credentials(
        self, client: httpx.AsyncClient, organization: Organization, monkeypatch: pytest.MonkeyPatch
    ):
        app.dependency_overrides.pop(get_oidc_client)
        monkeypatch.setattr(app.state, "oidc_client", None, raising=False)

        response = await client.get("/api/v1/auth/slack/login", params={"org": "acme"})

        assert response.status_code == 503
        assert response.json()["detail"]["error"] == "auth_config_missing"


# =============================================================================
# TEST: ADMIN DIRECTORY ROUTES
# =============================================================================


class TestDirectoryRoutes:
    async def test_sync_requires_login(self, client: httpx.AsyncClient):
        assert (await client.post("/api/v1/directory/sync")).status_code == 401

    async def test_sync_requires_admin(
        self, client: httpx.AsyncClient, organization: Organization, session: AsyncSession
    ):
        await add_user(session, organization, slack_user_id="U0ALICE01", email="alice@acme.test")
        await sign_in(client)

        assert (await client.post("/api/v1/directory/sync")).status_code == 403

    async def test_admin_runs_sync(
        self,
        client: httpx.AsyncClient,
        organization: Organization,
        session: AsyncSession,
        monkeypatch: pytest.MonkeyPatch,
    ):
        await add_user(
            session, organization, slack_user_id="U0ALICE01", email="alice@acme.test", role=UserRole.ADMIN
        )
        calls = []

        async def fake_sync(session, organization, trigger):
            calls.append((organization.slug, trigger))
            return ReconciliationOutcome(created=2, deactivated=1, onboarded=2)

        monkeypatch.setattr(directory_api, "sync_organization_directory", fake_sync)
        await sign_in(client)

        response = await client.post("/api/v1/directory/sync")

        assert response.status_code == 200
        assert response.json()["created"] == 2
        assert response.json()["error"] is None
        assert calls == [("acme", "manual")]

    async def test_failed_sync_is_structured(
        self,
        client: httpx.AsyncClient,
        organization: Organization,
        session: AsyncSession,
        monkeypatch: pytest.MonkeyPatch,
    ):
        await add_user(
            session, organization, slack_user_id="U0ALICE01", email="alice@acme.test", role=UserRole.OWNER
        )

        async def fake_sync(session, organization, trigger):
            return ReconciliationOutcome.failed(
                SyncErrorInfo(code="channel_not_found", message="gone", remediation="invite the bot")
            )

        monkeypatch.setattr(directory_api, "sync_organization_directory", fake_sync)
        await sign_in(client)

        response = await client.post("/api/v1/directory/sync")

        assert response.status_code == 200
        assert response.json()["error"]["error_code"] == "channel_not_found"
        assert response.json()["error"]["remediation"] == "invite the bot"

    async def test_list_runs(self, client: httpx.AsyncClient, organization: Organization, session: AsyncSession):
        await add_user(
            session, organization, slack_user_id="U0ALICE01", email="alice@acme.test", role=UserRole.ADMIN
        )
        await sign_in(client)

        response = await client.get("/api/v1/directory/sync/runs")

        assert response.status_code == 200
        assert response.json() == {"runs": []}


# =============================================================================
# TEST: SLACK WEBHOOKS
# =============================================================================


class TestSlackEvents:
    async def test_unsigned_request_rejected(self, client: httpx.AsyncClient):
        response = await client.post("/api/v1/slack/events", content=b'{"type":"url_verification"}')
        assert response.status_code == 401

    async def test_bad_signature_rejected(self, client: httpx.AsyncClient):
        body = b'{"type":"url_verification","challenge":"abc"}'
        headers = sign(body)
        headers["X-Slack-Signature"] = "v0=" + "0" * 64

        response = await client.post("/api/v1/slack/events", content=body, headers=headers)

        assert response.status_code == 401

    async def test_non_utf8_body_with_bad_signature_rejected(self, client: httpx.AsyncClient):
        body = b"payload=\xff\xfe"
        headers = sign(b"something else")

        response = await client.post("/api/v1/slack/events", content=body, headers=headers)

        assert response.status_code == 401

    def test_signature_covers_raw_bytes(self):
        body = b"payload=\xff\xfe"
        headers = sign(body)

        assert slack_api.verify_slack_signature(
            body, headers["X-Slack-Request-Timestamp"], headers["X-Slack-Signature"]
        )

    async def test_stale_timestamp_rejected(self, client: httpx.AsyncClient):
        body = b'{"type":"url_verification","challenge":"abc"}'
        response = await client.post(
            "/api/v1/slack/events", content=body, headers=sign(body, int(time.time()) - 600)
        )
        assert response.status_code == 401

    async def test_url_verification(self, client: httpx.AsyncClient):
        body = b'{"type":"url_verification","challenge":"abc"}'
        response = await client.post("/api/v1/slack/events", content=body, headers=sign(body))
        assert response.json() == {"challenge": "abc"}

    async def test_membership_event_schedules_sync(
        self, client: httpx.AsyncClient, organization: Organization, monkeypatch: pytest.MonkeyPatch
    ):
        scheduled = []

        async def fake_run(team_id, event):
            scheduled.append((team_id, event["type"]))

        monkeypatch.setattr(slack_api, "run_membership_sync", fake_run)
        body = json.dumps(
            {
                "type": "event_callback",
                "team_id": "T0ACME001",
                "event": {"type": "member_joined_channel", "channel": SYNC_CHANNEL_ID, "user": "U0NEW0001"},
            }
        ).encode()

        response = await client.post("/api/v1/slack/events", content=body, headers=sign(body))
        retry = await client.post(
            "/api/v1/slack/events", content=body, headers={**sign(body), "X-Slack-Retry-Num": "1"}
        )

        assert response.json() == {"ok": True}
        assert retry.json() == {"ok": True}
        assert scheduled == [("T0ACME001", "member_joined_channel")]

    async def test_other_channel_ignored(
        self, client: httpx.AsyncClient, organization: Organization, monkeypatch: pytest.MonkeyPatch
    ):
        scheduled = []

        async def fake_run(team_id, event):
            scheduled.append(team_id)

        monkeypatch.setattr(slack_api, "run_membership_sync", fake_run)
        body = json.dumps(
            {
                "type": "event_callback",
                "team_id": "T0ACME001",
                "event": {"type": "member_left_channel", "channel": "C0RANDOM01", "user": "U0ALICE01"},
            }
        ).encode()

        await client.post("/api/v1/slack/events", content=body, headers=sign(body))

        assert scheduled == []


class TestSlackCommandsAndInteractions:
    async def post_form(self, client: httpx.AsyncClient, path: str, fields: dict[str, str]) -> httpx.Response:
        body = urlencode(fields).encode()
        headers = {**sign(body), "Content-Type": "application/x-www-form-urlencoded"}
        return await client.post(path, content=body, headers=headers)

    async def test_command_from_unconnected_workspace(self, client: httpx.AsyncClient):
        response = await self.post_form(
            client, "/api/v1/slack/commands", {"team_id": "T0UNKNOWN", "user_id": "U1", "command": "/pulse"}
        )

        assert response.json()["response_type"] == "ephemeral"
        assert "not connected" in response.json()["text"]

    async def test_help_command(self, client: httpx.AsyncClient, organization: Organization):
        response = await self.post_form(
            client,
            "/api/v1/slack/commands",
            {"team_id": "T0ACME001", "user_id": "U0ALICE01", "command": "/pulse", "text": "help"},
        )

        assert response.status_code == 200
        assert response.json()["response_type"] == "ephemeral"
        assert response.json()["blocks"]

    async def test_dismiss_action(self, client: httpx.AsyncClient, organization: Organization):
        payload = {
            "type": "block_actions",
            "team": {"id": "T0ACME001"},
            "user": {"id": "U0ALICE01"},
            "actions": [{"action_id": "dismiss"}],
        }

        response = await self.post_form(client, "/api/v1/slack/interactions", {"payload": json.dumps(payload)})

        assert response.json()["text"] == "Dismissed."
        assert response.json()["replace_original"] is True

    async def test_unhandled_interaction_is_acknowledged(self, client: httpx.AsyncClient, organization: Organization):
        payload = {"type": "shortcut", "callback_id": "unknown", "team": {"id": "T0ACME001"}, "user": {"id": "U1"}}

        response = await self.post_form(client, "/api/v1/slack/interactions", {"payload": json.dumps(payload)})

        assert response.status_code == 200
        assert response.json() == {}
