"""Seat-based billing notifications using Stripe.

Directory sync only tells billing that seats were added or removed; pricing
and invoicing live in Stripe. Every notification is recorded as a
BillingEvent, and when the organization has a subscription its quantity is
set to the current active-user count.
"""

import asyncio
import logging

import stripe
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import BillingEvent, BillingEventType, Organization, User
from .config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# Initialize Stripe
if settings.stripe_enabled:
    stripe.api_key = settings.stripe_secret_key


class BillingService:
    """Records seat changes and keeps the Stripe subscription quantity current."""

    def __init__(self, session: AsyncSession, stripe_enabled: bool | None = None):
        self.session = session
        self.stripe_enabled = settings.stripe_enabled if stripe_enabled is None else stripe_enabled

    async def handle_user_addition(
        self, organization: Organization, count: int = 1, reason: str = "directory_sync"
    ) -> BillingEvent:
        return await self._notify(organization, BillingEventType.USER_ADDED, count, reason)

    async def handle_user_removal(
        self, organization: Organization, count: int = 1, reason: str = "directory_sync"
    ) -> BillingEvent:
        return await self._notify(organization, BillingEventType.USER_REMOVED, count, reason)

    async def count_active_seats(self, organization_id) -> int:
        result = await self.session.execute(
            select(func.count(User.id)).where(
                User.organization_id == organization_id,
                User.is_active.is_(True),
            )
        )
        return int(result.scalar_one())

    async def _notify(
        self,
        organization: Organization,
        event_type: BillingEventType,
        count: int,
        reason: str,
    ) -> BillingEvent:
        seats = await self.count_active_seats(organization.id)
        synced = await self.update_subscription_quantity(organization, seats)

        event = BillingEvent(
            organization_id=organization.id,
            event_type=event_type,
            user_count=count,
            active_seats=seats,
            reason=reason,
            stripe_synced=synced,
        )
        self.session.add(event)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            f"Billing {event_type.value} for org {organization.slug}: "
            f"{count} user(s), {seats} active seat(s), stripe_synced={synced}"
        )
        return event

    async def update_subscription_quantity(self, organization: Organization, seats: int) -> bool:
        """Set the subscription's seat quantity. Returns whether Stripe was updated."""
        if not self.stripe_enabled or not organization.stripe_subscription_id:
            return False

        try:
            await asyncio.to_thread(
                self._modify_subscription, organization.stripe_subscription_id, seats
            )
        except stripe.StripeError as e:
            # Billing drift is reconciled out-of-band; the event row records it
            logger.error(f"Stripe quantity update failed for org {organization.slug}: {e}")
            return False
        return True

    @staticmethod
    def _modify_subscription(subscription_id: str, seats: int) -> None:
        subscription = stripe.Subscription.retrieve(subscription_id)
        items = subscription["items"]["data"]
        if not items:
            raise stripe.InvalidRequestError(
                f"Subscription {subscription_id} has no items", param="items"
            )
        stripe.Subscription.modify(
            subscription_id,
            items=[{"id": items[0]["id"], "quantity": max(seats, 1)}],
            proration_behavior="create_prorations",
        )
