"""Read-only preview of what a tier change would cost.

Mirrors the classification of the transition engine without mutating Stripe
or the profile.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from studyhall.core.config import Settings, settings as default_settings
from studyhall.core.exceptions import IncompleteProcessorResponseError
from studyhall.core.logging import ContextualLogger, logger
from studyhall.integrations.stripe_client import StripeClient
from studyhall.platform.billing.payment_methods import PaymentMethodService
from studyhall.platform.billing.plan_logic import (
    PreviewContext,
    TierPolicy,
    analyze_preview,
    estimate_next_payment_at,
    parse_tier,
    split_proration_lines,
)
from studyhall.platform.billing.profile_repository import BillingProfileRepository
from studyhall.schemas.billing import (
    BillingInterval,
    PreviewAction,
    PreviewLine,
    PreviewResult,
    Tier,
)
from studyhall.schemas.processor import ProcessorSubscription


class PreviewService:
    """Computes amounts, dates and lines for a prospective tier change."""

    def __init__(
        self,
        stripe: StripeClient,
        repository: BillingProfileRepository,
        policy: TierPolicy,
        settings: Optional[Settings] = None,
        payment_methods: Optional[PaymentMethodService] = None,
    ):
        """Initialize with the Stripe client, profile repository and tier policy."""
        self.stripe = stripe
        self.repository = repository
        self.policy = policy
        self.settings = settings or default_settings
        self.payment_methods = payment_methods or PaymentMethodService(stripe, repository)

    async def _subscription(
        self, subscription_id: Optional[str]
    ) -> Optional[ProcessorSubscription]:
        if not subscription_id:
            return None
        return await self.stripe.get_subscription(subscription_id)

    async def preview_transition(
        self,
        user_id: str,
        desired_tier,
        interval: Optional[BillingInterval] = None,
        log: Optional[ContextualLogger] = None,
    ) -> PreviewResult:
        """Preview a tier change.

        Args:
        ----
            user_id (str): The user whose profile is read.
            desired_tier: Requested tier name; unknown names raise InvalidTierError.
            interval (BillingInterval, optional): Target billing interval. Defaults to
                the current subscription's interval, or monthly for a signup.
            log (ContextualLogger, optional): Request-scoped logger.

        Returns:
        -------
            PreviewResult: Amounts in minor currency units with the action the change
                would take.

        """
        desired = parse_tier(desired_tier)
        log = log or logger.with_context(user_id=user_id)
        profile = await self.repository.get_profile(user_id)

        card, subscription = await asyncio.gather(
            self.payment_methods.find_card(profile, log),
            self._subscription(profile.processor_subscription_id),
        )

        result = PreviewResult(
            current_tier=profile.tier,
            desired_tier=desired,
            has_customer=bool(profile.processor_customer_id),
            has_payment_method=card is not None,
            payment_method=card,
            currency=self.settings.DEFAULT_CURRENCY,
        )
        decision = analyze_preview(
            PreviewContext(
                current_tier=profile.tier,
                desired_tier=desired,
                has_subscription=subscription is not None,
            )
        )
        result.action = decision.action
        log.info(f"Preview {profile.tier.value} -> {desired.value}: {decision.action.value}")

        if subscription is None:
            if desired is Tier.FREE:
                result.lines = [
                    PreviewLine(description="Free plan", amount=0, currency=result.currency)
                ]
                return result
            return await self._preview_signup(result, desired, interval or BillingInterval.MONTH)

        if decision.action == PreviewAction.CANCEL_TO_FREE:
            return self._preview_cancel(result, subscription)

        target_interval = interval or self.policy.interval_from_recurring(
            subscription.recurring_interval
        )
        price_id = self.policy.require_price_id(desired, target_interval)

        if decision.action == PreviewAction.DOWNGRADE:
            return await self._preview_downgrade(result, subscription, desired, price_id)
        return await self._preview_price_change(result, subscription, price_id)

    async def _preview_signup(
        self, result: PreviewResult, desired: Tier, interval: BillingInterval
    ) -> PreviewResult:
        price = await self.stripe.get_price(self.policy.require_price_id(desired, interval))
        currency = price.currency or result.currency
        now = datetime.now(timezone.utc)

        result.currency = currency
        result.due_now = price.unit_amount
        result.next_amount = price.unit_amount
        result.next_payment_at = estimate_next_payment_at(
            now, price.recurring_interval, price.recurring_interval_count
        )
        result.requires_payment_method = not result.has_payment_method
        result.lines = [
            PreviewLine(
                description=f"First {interval.value}: {desired.display_name}",
                amount=price.unit_amount,
                currency=currency,
            )
        ]
        return result

    @staticmethod
    def _preview_cancel(
        result: PreviewResult, subscription: ProcessorSubscription
    ) -> PreviewResult:
        currency = subscription.currency or result.currency
        result.currency = currency
        result.effective_at = subscription.current_period_end
        result.lines = [
            PreviewLine(
                description="No charge today",
                amount=0,
                currency=currency,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
            )
        ]
        return result

    async def _preview_downgrade(
        self,
        result: PreviewResult,
        subscription: ProcessorSubscription,
        desired: Tier,
        price_id: str,
    ) -> PreviewResult:
        price = await self.stripe.get_price(price_id)
        currency = price.currency or subscription.currency or result.currency
        period_end = subscription.current_period_end

        result.currency = currency
        result.next_amount = price.unit_amount
        result.next_payment_at = period_end
        result.effective_at = period_end
        result.lines = [
            PreviewLine(
                description="No charge today (downgrade takes effect next billing period)",
                amount=0,
                currency=currency,
                period_start=subscription.current_period_start,
                period_end=period_end,
            ),
            PreviewLine(
                description=f"Next period: {desired.display_name}",
                amount=price.unit_amount,
                currency=currency,
                period_start=period_end,
            ),
        ]
        return result

    async def _preview_price_change(
        self,
        result: PreviewResult,
        subscription: ProcessorSubscription,
        price_id: str,
    ) -> PreviewResult:
        item = subscription.primary_item
        if item is None:
            raise IncompleteProcessorResponseError(f"Subscription {subscription.id} has no items")
        if not subscription.customer_id:
            raise IncompleteProcessorResponseError(
                f"Subscription {subscription.id} has no customer"
            )

        upcoming = await self.stripe.preview_price_change(
            subscription.customer_id, subscription.id, item.id, price_id
        )
        currency = upcoming.currency or subscription.currency or result.currency
        due_now, next_amount = split_proration_lines(upcoming.lines)

        result.currency = currency
        result.due_now = due_now
        result.next_amount = next_amount
        result.next_payment_at = subscription.current_period_end
        result.requires_payment_method = not result.has_payment_method
        result.lines = [
            PreviewLine(
                description=line.description or "Line item",
                amount=line.amount,
                currency=line.currency or currency,
                proration=line.proration,
                period_start=line.period_start,
                period_end=line.period_end,
            )
            for line in upcoming.lines
        ]
        return result
