"""Best-effort side effects of a reconciliation run.

Billing notifications and onboarding messages never change the directory or
the reconciliation counts; their failures are logged and counted only.
"""

from collections.abc import Awaitable, Callable
from typing import Any, Protocol
import asyncio
import logging

from ..integrations.slack.messages import DirectMessenger, SlackBlocks
from ..models import Organization
from .reconciliation import (
    PendingOnboarding,
    ReconciliationOutcome,
    ReconciliationResult,
    SyncErrorInfo,
)

logger = logging.getLogger(__name__)


class BillingNotifier(Protocol):
    async def handle_user_addition(self, organization: Organization, count: int, reason: str = ...) -> Any:
        ...

    async def handle_user_removal(self, organization: Organization, count: int, reason: str = ...) -> Any:
        ...


class SideEffectCoordinator:
    """Fans out billing and onboarding for one reconciliation result."""

    def __init__(
        self,
        billing: BillingNotifier | None,
        messenger: DirectMessenger | None,
        *,
        app_base_url: str,
        send_delay_seconds: float = 1.0,
        private_channel_id: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.billing = billing
        self.messenger = messenger
        self.app_base_url = app_base_url.rstrip("/")
        self.send_delay_seconds = send_delay_seconds
        self.private_channel_id = private_channel_id
        self.sleep = sleep

    async def apply(
        self, organization: Organization, result: ReconciliationResult
    ) -> ReconciliationOutcome:
        outcome = result.outcome
        await self.notify_billing(organization, outcome)

        onboarded, errors = await self.send_onboarding(organization, result.pending_onboarding)
        outcome.onboarded += onboarded
        outcome.onboarding_errors += errors

        # Raw setup tokens must not outlive this call
        result.pending_onboarding.clear()
        return outcome

    async def notify_billing(self, organization: Organization, outcome: ReconciliationOutcome) -> None:
        """One aggregated call per direction."""
        if self.billing is None:
            return

        if outcome.seats_added > 0:
            try:
                await self.billing.handle_user_addition(
                    organization, outcome.seats_added, reason="directory_sync"
                )
            except Exception as e:
                logger.error(f"Billing addition failed for org {organization.slug}: {e}")

        if outcome.deactivated > 0:
            try:
                await self.billing.handle_user_removal(
                    organization, outcome.deactivated, reason="directory_sync"
                )
            except Exception as e:
                logger.error(f"Billing removal failed for org {organization.slug}: {e}")

    async def send_onboarding(
        self, organization: Organization, pending: list[PendingOnboarding]
    ) -> tuple[int, int]:
        """Send setup messages one at a time. Returns (sent, failed)."""
        if not pending:
            return 0, 0

        if self.messenger is None:
            logger.warning(
                f"No messenger for org {organization.slug}; {len(pending)} onboarding message(s) not sent"
            )
            return 0, len(pending)

        sent = failed = 0
        for index, entry in enumerate(pending):
            if index:
                await self.sleep(self.send_delay_seconds)

            if not entry.external_id:
                failed += 1
                logger.warning(f"Cannot onboard {entry.email}: no Slack user id to message")
                continue

            setup_url = f"{self.app_base_url}/setup?token={entry.setup_token}"
            try:
                await self.messenger.send_direct_message(
                    entry.external_id,
                    text=f"Welcome to Team Pulse, {entry.name}! Finish setting up your account: {setup_url}",
                    blocks=SlackBlocks.onboarding(entry.name, setup_url, organization.name),
                )
                sent += 1
            except Exception as e:
                failed += 1
                logger.warning(f"Onboarding message to {entry.external_id} failed: {e}")

        logger.info(f"Onboarding for org {organization.slug}: {sent} sent, {failed} failed")
        return sent, failed

    async def report_failure(self, organization: Organization, error: SyncErrorInfo) -> bool:
        """Post an admin diagnostic to the private notifications channel, if any."""
        if not self.private_channel_id or self.messenger is None:
            return False

        try:
            await self.messenger.post_to_channel(
                self.private_channel_id,
                text=f"Directory sync failed for {organization.name}: {error.message}",
                blocks=SlackBlocks.sync_failure(organization.name, error.to_dict()),
            )
        except Exception as e:
            logger.warning(f"Could not post sync failure for org {organization.slug}: {e}")
            return False
        return True
