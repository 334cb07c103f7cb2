"""Thin async wrapper over the Slack Web API.

One SlackWebClient is bound to one bot token, so several organizations can
sync concurrently with their own credentials. The underlying
httpx.AsyncClient is injectable for tests.
"""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

SLACK_API_BASE = "https://slack.com/api"


class SlackApiError(Exception):
    """A Slack Web API call failed.

    `error` is Slack's error string (e.g. "missing_scope") or a local code
    ("http_error", "timeout", "transport_error", "invalid_response").
    """

    def __init__(
        self,
        method: str,
        error: str,
        *,
        status_code: int | None = None,
        needed: str | None = None,
        provided: str | None = None,
    ):
        self.method = method
        self.error = error
        self.status_code = status_code
        self.needed = needed
        self.provided = provided
        super().__init__(f"Slack API {method} failed: {error}")


class SlackWebClient:
    """Calls Slack Web API methods with a bot token."""

    def __init__(
        self,
        token: str,
        *,
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = SLACK_API_BASE,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "SlackWebClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def call(
        self,
        method: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call a method; GET with params, or POST with a JSON body."""
        url = f"{self.base_url}/{method}"
        headers = {"Authorization": f"Bearer {self.token}"}

        try:
            if json is not None:
                response = await self.http_client.post(url, json=json, headers=headers)
            else:
                response = await self.http_client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise SlackApiError(method, "timeout") from e
        except httpx.HTTPError as e:
            raise SlackApiError(method, "transport_error") from e

        if response.status_code == 429:
            raise SlackApiError(method, "ratelimited", status_code=429)
        if response.status_code >= 400:
            raise SlackApiError(method, "http_error", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise SlackApiError(method, "invalid_response", status_code=response.status_code) from e

        if not data.get("ok"):
            raise SlackApiError(
                method,
                data.get("error") or "unknown_error",
                status_code=response.status_code,
                needed=data.get("needed"),
                provided=data.get("provided"),
            )

        return data

    # =========================================================================
    # METHODS
    # =========================================================================

    async def conversations_list(self, cursor: str | None = None, limit: int = 1000) -> dict[str, Any]:
        params: dict[str, Any] = {
            "types": "public_channel,private_channel",
            "exclude_archived": "true",
            "limit": limit,
        }
        if cursor:
            params["cursor"] = cursor
        return await self.call("conversations.list", params=params)

    async def conversations_info(self, channel: str) -> dict[str, Any]:
        return await self.call("conversations.info", params={"channel": channel})

    async def conversations_members(
        self, channel: str, cursor: str | None = None, limit: int = 1000
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"channel": channel, "limit": limit}
        if cursor:
            params["cursor"] = cursor
        return await self.call("conversations.members", params=params)

    async def users_info(self, user: str) -> dict[str, Any]:
        return await self.call("users.info", params={"user": user})

    async def conversations_open(self, users: str) -> dict[str, Any]:
        return await self.call("conversations.open", json={"users": users})

    async def chat_post_message(
        self, channel: str, text: str, blocks: list[dict] | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            body["blocks"] = blocks
        return await self.call("chat.postMessage", json=body)


def next_cursor(page: dict[str, Any]) -> str | None:
    """Slack signals the last page with an empty or missing next_cursor."""
    cursor = (page.get("response_metadata") or {}).get("next_cursor")
    return cursor or None
