"""Slack message composition and delivery.

SlackBlocks builds Block Kit payloads; SlackMessenger opens a DM and posts
them. Reconciliation never depends on whether a message was delivered.
"""

import logging
from typing import Any, Protocol

from .client import SlackWebClient

logger = logging.getLogger(__name__)


# =============================================================================
# BLOCK KIT BUILDERS
# =============================================================================


class SlackBlocks:
    """Factory for the Block Kit structures the directory engine sends."""

    @staticmethod
    def onboarding(name: str, setup_url: str, organization_name: str) -> list[dict]:
        """Welcome message with the one-time setup link."""
        return [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": (
                        f"*Welcome to {organization_name} on Team Pulse, {name}!* :wave:\n"
                        "You were added because you joined the team's check-in channel. "
                        "Finish setting up your account to start sharing weekly check-ins."
                    ),
                },
            },
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Set up my account", "emoji": True},
                        "style": "primary",
                        "url": setup_url,
                        "action_id": "open_setup_link",
                    },
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Remind me tomorrow", "emoji": True},
                        "action_id": "remind_setup_later",
                        "value": "setup",
                    },
                ],
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": "This link works once and expires in 7 days.",
                    }
                ],
            },
        ]

    @staticmethod
    def setup_reminder(name: str, setup_url: str) -> list[dict]:
        return [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"Hi {name}, here's the reminder you asked for. :alarm_clock:",
                },
            },
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Set up my account", "emoji": True},
                        "style": "primary",
                        "url": setup_url,
                        "action_id": "open_setup_link",
                    },
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Dismiss", "emoji": True},
                        "action_id": "dismiss",
                    },
                ],
            },
        ]

    @staticmethod
    def help_message() -> list[dict]:
        return [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "*Team Pulse commands* :book:"},
            },
            {"type": "divider"},
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": (
                        "`/pulse help` - Show this help message\n"
                        "`/pulse whoami` - Show your directory record\n"
                        "`/pulse join` - Add yourself to the team directory\n"
                        "`/pulse sync-status` - Last directory sync (admins)"
                    ),
                },
            },
        ]

    @staticmethod
    def sync_failure(organization_name: str, error: dict[str, Any]) -> list[dict]:
        """Admin-facing diagnostic for the private notifications channel."""
        detail = error.get("detail") or {}
        detail_text = "\n".join(f"• *{k}*: {v}" for k, v in detail.items()) or "_no detail_"
        return [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"Directory sync failed for {organization_name}",
                    "emoji": True,
                },
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*{error.get('error_code')}*: {error.get('message', '')}",
                },
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*What to do:* {error.get('remediation', '')}"},
            },
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": detail_text}],
            },
        ]


# =============================================================================
# DELIVERY
# =============================================================================


class DirectMessenger(Protocol):
    async def send_direct_message(
        self, user_external_id: str, text: str, blocks: list[dict] | None = None
    ) -> None:
        ...

    async def post_to_channel(
        self, channel_id: str, text: str, blocks: list[dict] | None = None
    ) -> None:
        ...


class SlackMessenger:
    """Delivers messages through an organization's bot client."""

    def __init__(self, client: SlackWebClient):
        self.client = client

    async def send_direct_message(
        self, user_external_id: str, text: str, blocks: list[dict] | None = None
    ) -> None:
        opened = await self.client.conversations_open(user_external_id)
        channel_id = (opened.get("channel") or {}).get("id")
        if not channel_id:
            raise ValueError(f"conversations.open returned no channel for {user_external_id}")
        await self.client.chat_post_message(channel_id, text, blocks)

    async def post_to_channel(
        self, channel_id: str, text: str, blocks: list[dict] | None = None
    ) -> None:
        await self.client.chat_post_message(channel_id, text, blocks)
