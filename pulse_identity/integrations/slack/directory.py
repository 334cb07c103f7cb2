"""Enumerate the members of the sync channel.

DirectoryFetcher never raises: every outcome is a DirectoryFetchResult that
holds either a non-empty member list or exactly one FetchFailure variant.
Failure variants carry only the fields their remediation needs.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar

from .client import SlackApiError, SlackWebClient, next_cursor

logger = logging.getLogger(__name__)

# Slack conversation ids: C (public), G (private/legacy), D (direct message)
CHANNEL_ID_PATTERN = re.compile(r"^[CGD][A-Z0-9]{8,}$")

PAGE_SIZE = 1000
DEFAULT_MAX_PAGES = 50

AUTH_ERRORS = frozenset(
    {"not_authed", "invalid_auth", "account_inactive", "token_revoked", "token_expired"}
)
CHANNEL_ERRORS = frozenset({"channel_not_found", "not_in_channel"})

# Scopes the bot needs for directory sync and onboarding messages
REQUIRED_SCOPES = ("channels:read", "groups:read", "users:read", "users:read.email", "chat:write")


# =============================================================================
# EXTERNAL IDENTITY
# =============================================================================


@dataclass(frozen=True)
class ExternalIdentity:
    """Point-in-time snapshot of one channel member."""

    external_id: str
    display_name: str
    email: str | None
    is_active: bool

    @classmethod
    def from_slack_user(cls, user: dict[str, Any]) -> "ExternalIdentity":
        profile = user.get("profile") or {}
        email = profile.get("email")
        return cls(
            external_id=user["id"],
            display_name=(
                user.get("real_name")
                or profile.get("real_name")
                or user.get("name")
                or "Unknown User"
            ),
            email=email.strip().lower() if email else None,
            is_active=not user.get("deleted", False) and not user.get("is_bot", False),
        )


# =============================================================================
# FAILURES
# =============================================================================


@dataclass(frozen=True)
class FetchFailure:
    """Base for the closed set of fetch failures."""

    code: ClassVar[str] = "fetch_failure"

    @property
    def remediation(self) -> str:
        raise NotImplementedError

    @property
    def message(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        detail = {k: v for k, v in self.__dict__.items() if v not in (None, (), "")}
        return {
            "error_code": self.code,
            "message": self.message,
            "remediation": self.remediation,
            "detail": detail,
        }


@dataclass(frozen=True)
class MissingToken(FetchFailure):
    code: ClassVar[str] = "missing_token"

    @property
    def message(self) -> str:
        return "No Slack bot token is configured for this organization."

    @property
    def remediation(self) -> str:
        return "Install the Slack app for this workspace or set SLACK_BOT_TOKEN."


@dataclass(frozen=True)
class InvalidAuth(FetchFailure):
    code: ClassVar[str] = "invalid_auth"
    detail: str = ""

    @property
    def message(self) -> str:
        return "Slack rejected the bot token."

    @property
    def remediation(self) -> str:
        return "Reinstall the Slack app to issue a new bot token."


@dataclass(frozen=True)
class MissingScope(FetchFailure):
    code: ClassVar[str] = "missing_scope"
    needed: str | None = None
    provided: str | None = None

    @property
    def message(self) -> str:
        return f"The Slack app is missing a required scope ({self.needed or 'unknown'})."

    @property
    def remediation(self) -> str:
        scopes = self.needed or ", ".join(REQUIRED_SCOPES)
        return f"Add the {scopes} scope(s) to the Slack app and reinstall it."


@dataclass(frozen=True)
class ChannelNotFound(FetchFailure):
    code: ClassVar[str] = "channel_not_found"
    channel: str = ""
    pages_scanned: int = 0
    detail: str = ""

    @property
    def message(self) -> str:
        return f"Channel '{self.channel}' could not be found or accessed."

    @property
    def remediation(self) -> str:
        return (
            f"Check the channel exists and invite the bot to it "
            f"(/invite @<bot> in #{self.channel.lstrip('#')}), "
            f"or configure SLACK_SYNC_CHANNEL_ID."
        )


@dataclass(frozen=True)
class NoMembers(FetchFailure):
    code: ClassVar[str] = "no_members"
    channel_id: str = ""

    @property
    def message(self) -> str:
        return f"Channel {self.channel_id} has no resolvable members."

    @property
    def remediation(self) -> str:
        return "Add team members to the sync channel; nothing was changed."


@dataclass(frozen=True)
class MembersFetchError(FetchFailure):
    code: ClassVar[str] = "members_fetch_error"
    channel_id: str = ""
    detail: str = ""

    @property
    def message(self) -> str:
        return f"Listing members of {self.channel_id or 'the channel'} failed."

    @property
    def remediation(self) -> str:
        return "Retry later; if it persists, check Slack's status page and the bot's access."


def failure_from_api_error(
    error: SlackApiError, *, channel: str = "", channel_id: str = ""
) -> FetchFailure:
    """Map a Slack API error onto the closed failure set."""
    if error.error in AUTH_ERRORS:
        return InvalidAuth(detail=f"{error.method}: {error.error}")
    if error.error == "missing_scope":
        return MissingScope(needed=error.needed, provided=error.provided)
    if error.error in CHANNEL_ERRORS:
        return ChannelNotFound(
            channel=channel or channel_id, detail=f"{error.method}: {error.error}"
        )
    return MembersFetchError(channel_id=channel_id, detail=f"{error.method}: {error.error}")


# =============================================================================
# RESULT
# =============================================================================


@dataclass
class DirectoryFetchResult:
    """Members on success, one failure otherwise."""

    members: list[ExternalIdentity] = field(default_factory=list)
    failure: FetchFailure | None = None
    channel_id: str | None = None
    skipped_external_ids: frozenset[str] = frozenset()
    member_pages: int = 0

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def failed(cls, failure: FetchFailure, channel_id: str | None = None) -> "DirectoryFetchResult":
        return cls(failure=failure, channel_id=channel_id)


class _PagingStopped(Exception):
    """Paging hit the page bound or a repeated cursor."""


# =============================================================================
# FETCHER
# =============================================================================


class DirectoryFetcher:
    """Resolves the sync channel and lists its members' profiles."""

    def __init__(
        self,
        client: SlackWebClient | None,
        *,
        max_pages: int = DEFAULT_MAX_PAGES,
        page_size: int = PAGE_SIZE,
        profile_delay_seconds: float = 0.0,
    ):
        self.client = client
        self.max_pages = max_pages
        self.page_size = page_size
        self.profile_delay_seconds = profile_delay_seconds

    async def list_channel_members(self, channel_name_or_id: str) -> DirectoryFetchResult:
        if self.client is None or not self.client.token:
            return DirectoryFetchResult.failed(MissingToken())

        channel = (channel_name_or_id or "").strip()

        try:
            if CHANNEL_ID_PATTERN.match(channel):
                await self.client.conversations_info(channel)
                channel_id = channel
            else:
                found, pages_scanned, stop_reason = await self._find_channel_by_name(channel)
                if found is None:
                    return DirectoryFetchResult.failed(
                        ChannelNotFound(
                            channel=channel, pages_scanned=pages_scanned, detail=stop_reason
                        )
                    )
                channel_id = found
        except SlackApiError as e:
            logger.warning(f"Resolving Slack channel '{channel}' failed: {e}")
            return DirectoryFetchResult.failed(failure_from_api_error(e, channel=channel))

        try:
            member_ids, member_pages = await self._list_member_ids(channel_id)
        except SlackApiError as e:
            logger.warning(f"Listing members of {channel_id} failed: {e}")
            return DirectoryFetchResult.failed(
                failure_from_api_error(e, channel=channel, channel_id=channel_id), channel_id
            )
        except _PagingStopped as e:
            logger.error(f"Member paging for {channel_id} stopped early: {e}")
            return DirectoryFetchResult.failed(
                MembersFetchError(channel_id=channel_id, detail=str(e)), channel_id
            )

        if not member_ids:
            return DirectoryFetchResult.failed(NoMembers(channel_id=channel_id), channel_id)

        try:
            members, skipped = await self._resolve_profiles(member_ids)
        except SlackApiError as e:
            logger.warning(f"Profile lookups for {channel_id} aborted: {e}")
            return DirectoryFetchResult.failed(
                failure_from_api_error(e, channel=channel, channel_id=channel_id), channel_id
            )

        if not members:
            if skipped:
                return DirectoryFetchResult.failed(
                    MembersFetchError(
                        channel_id=channel_id,
                        detail=f"All {len(skipped)} profile lookups failed",
                    ),
                    channel_id,
                )
            return DirectoryFetchResult.failed(NoMembers(channel_id=channel_id), channel_id)

        logger.info(
            f"Fetched {len(members)} members of {channel_id} "
            f"({len(skipped)} skipped, {member_pages} page(s))"
        )
        return DirectoryFetchResult(
            members=members,
            channel_id=channel_id,
            skipped_external_ids=frozenset(skipped),
            member_pages=member_pages,
        )

    async def _find_channel_by_name(self, name: str) -> tuple[str | None, int, str]:
        """Page the channel catalog. Returns (channel_id, pages_scanned, stop_reason)."""
        wanted = name.lstrip("#").lower()
        cursor: str | None = None
        seen_cursors: set[str] = set()
        pages = 0

        while pages < self.max_pages:
            page = await self.client.conversations_list(cursor=cursor, limit=self.page_size)
            pages += 1

            for channel in page.get("channels", []):
                names = {
                    (channel.get("name") or "").lower(),
                    (channel.get("name_normalized") or "").lower(),
                }
                if wanted in names:
                    logger.debug(f"Found channel #{wanted} as {channel['id']} on page {pages}")
                    return channel["id"], pages, ""

            cursor = next_cursor(page)
            if cursor is None:
                return None, pages, "catalog exhausted"
            if cursor in seen_cursors:
                logger.warning(f"Channel catalog returned a repeated cursor after {pages} page(s)")
                return None, pages, "repeated cursor"
            seen_cursors.add(cursor)

        logger.warning(f"Channel catalog scan stopped at the {self.max_pages} page limit")
        return None, pages, f"page limit ({self.max_pages}) reached"

    async def _list_member_ids(self, channel_id: str) -> tuple[list[str], int]:
        member_ids: list[str] = []
        cursor: str | None = None
        seen_cursors: set[str] = set()
        pages = 0

        while True:
            if pages >= self.max_pages:
                raise _PagingStopped(f"page limit ({self.max_pages}) reached")

            page = await self.client.conversations_members(
                channel_id, cursor=cursor, limit=self.page_size
            )
            pages += 1
            member_ids.extend(page.get("members", []))

            cursor = next_cursor(page)
            if cursor is None:
                return member_ids, pages
            if cursor in seen_cursors:
                raise _PagingStopped(f"repeated cursor after {pages} page(s)")
            seen_cursors.add(cursor)

    async def _resolve_profiles(self, member_ids: list[str]) -> tuple[list[ExternalIdentity], set[str]]:
        members: list[ExternalIdentity] = []
        skipped: set[str] = set()

        for index, member_id in enumerate(member_ids):
            if index and self.profile_delay_seconds:
                await asyncio.sleep(self.profile_delay_seconds)
            try:
                data = await self.client.users_info(member_id)
                members.append(ExternalIdentity.from_slack_user(data["user"]))
            except SlackApiError as e:
                if e.error in AUTH_ERRORS or e.error == "missing_scope":
                    # Every remaining lookup would fail the same way
                    raise
                logger.warning(f"Skipping member {member_id}: profile lookup failed ({e})")
                skipped.add(member_id)
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping member {member_id}: profile lookup failed ({e})")
                skipped.add(member_id)

        return members, skipped
