"""Webhook processor for Stripe billing events.

This module handles incoming Stripe webhook events and re-derives the billing
profile from the subscription they carry. Every handler is a pure overwrite,
so a replayed or duplicated delivery converges to the same profile.
"""

from dataclasses import dataclass
from typing import Optional

import stripe

from studyhall.core.logging import ContextualLogger, logger
from studyhall.integrations.stripe_client import StripeClient
from studyhall.platform.billing.plan_logic import (
    TierPolicy,
    profile_update_for_deleted_subscription,
    profile_update_for_subscription,
)
from studyhall.platform.billing.profile_repository import BillingProfileRepository
from studyhall.schemas.billing import UserBillingProfileUpdate
from studyhall.schemas.processor import OWNER_METADATA_KEY


@dataclass
class WebhookOutcome:
    """What processing a delivery did."""

    event_id: str
    event_type: str
    handled: bool = False
    detail: Optional[str] = None


class BillingWebhookProcessor:
    """Process Stripe webhook events for billing."""

    def __init__(
        self,
        stripe_client: StripeClient,
        repository: BillingProfileRepository,
        policy: TierPolicy,
    ):
        """Initialize webhook processor."""
        self.stripe = stripe_client
        self.repository = repository
        self.policy = policy

        # Event handler mapping
        self.handlers = {
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
        }

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify a delivery and process the event it carries.

        Raises WebhookVerificationError before anything is read or written when
        the signature does not verify.
        """
        event = self.stripe.construct_event(payload, signature)
        return await self.process_event(event)

    async def process_event(self, event: stripe.Event) -> WebhookOutcome:
        """Process a verified Stripe webhook event."""
        log = logger.with_context(
            auth_method="stripe_webhook",
            event_type=event.type,
            stripe_event_id=event.id,
        )

        handler = self.handlers.get(event.type)
        if not handler:
            log.info(f"Unhandled webhook event type: {event.type}")
            return WebhookOutcome(event_id=event.id, event_type=event.type, detail="ignored")

        try:
            log.info(f"Processing webhook event: {event.type}")
            return await handler(event, log)
        except Exception as e:
            log.error(f"Error handling {event.type}: {e}", exc_info=True)
            raise

    # Event handlers

    async def _handle_subscription_updated(
        self,
        event: stripe.Event,
        log: ContextualLogger,
    ) -> WebhookOutcome:
        """Mirror a subscription's price, status and cancellation into the profile."""
        subscription = self.stripe.subscription_from_event(event.data.object)
        user_id = subscription.owner_id
        if not user_id:
            log.warning(f"No {OWNER_METADATA_KEY} in subscription {subscription.id} metadata")
            return WebhookOutcome(event_id=event.id, event_type=event.type, detail="no owner")

        log = log.with_context(user_id=user_id, subscription_id=subscription.id)
        profile = await self.repository.get_profile(user_id)
        update = profile_update_for_subscription(subscription, profile, self.policy)
        if update is None:
            log.info(
                f"Ignoring {subscription.status} subscription {subscription.id}; "
                f"profile tracks {profile.processor_subscription_id}"
            )
            return WebhookOutcome(event_id=event.id, event_type=event.type, detail="superseded")

        updated = await self.repository.update_profile(user_id, update, current=profile, log=log)
        log.info(
            f"Profile reconciled: tier={updated.tier.value}, "
            f"pending={updated.pending_tier.value if updated.pending_tier else None}, "
            f"status={updated.processor_subscription_status}"
        )
        return WebhookOutcome(event_id=event.id, event_type=event.type, handled=True)

    async def _handle_subscription_deleted(
        self,
        event: stripe.Event,
        log: ContextualLogger,
    ) -> WebhookOutcome:
        """Drop the user to free when their tracked subscription ends."""
        subscription = self.stripe.subscription_from_event(event.data.object)
        user_id = subscription.owner_id
        if not user_id:
            log.warning(f"No {OWNER_METADATA_KEY} in subscription {subscription.id} metadata")
            return WebhookOutcome(event_id=event.id, event_type=event.type, detail="no owner")

        log = log.with_context(user_id=user_id, subscription_id=subscription.id)
        profile = await self.repository.get_profile(user_id)
        if profile.processor_subscription_id != subscription.id:
            log.info(
                f"Deleted subscription {subscription.id} is not the tracked one "
                f"({profile.processor_subscription_id}); nothing to do"
            )
            return WebhookOutcome(event_id=event.id, event_type=event.type, detail="superseded")

        await self.repository.update_profile(
            user_id, profile_update_for_deleted_subscription(), current=profile, log=log
        )
        log.info(f"Subscription {subscription.id} ended; user is back on free")
        return WebhookOutcome(event_id=event.id, event_type=event.type, handled=True)

    async def _handle_invoice_paid(
        self,
        event: stripe.Event,
        log: ContextualLogger,
    ) -> WebhookOutcome:
        """Grant an upgrade whose proration invoice was paid out of band."""
        invoice = self.stripe.invoice_from_event(event.data.object)
        user_id = invoice.metadata.get(OWNER_METADATA_KEY)
        if not user_id:
            log.info(f"Invoice {invoice.id} carries no owner; nothing to do")
            return WebhookOutcome(event_id=event.id, event_type=event.type, detail="no owner")

        log = log.with_context(user_id=user_id, invoice_id=invoice.id)
        profile = await self.repository.get_profile(user_id)
        if profile.pending_payment_invoice_id != invoice.id or profile.pending_payment_tier is None:
            log.info(f"Invoice {invoice.id} is not awaited by the profile")
            return WebhookOutcome(event_id=event.id, event_type=event.type, detail="not awaited")

        tier = profile.pending_payment_tier
        update = UserBillingProfileUpdate.clear_pending(
            tier=tier,
            pending_payment_invoice_id=None,
            pending_payment_tier=None,
        )
        await self.repository.update_profile(user_id, update, current=profile, log=log)
        log.info(f"Invoice {invoice.id} paid; tier is now {tier.value}")
        return WebhookOutcome(event_id=event.id, event_type=event.type, handled=True)
