"""Saved payment method management."""

import time
from typing import Optional

from studyhall.core.exceptions import InvalidRequestError, PermissionException, ProcessorError
from studyhall.core.logging import ContextualLogger, logger
from studyhall.integrations.stripe_client import StripeClient
from studyhall.platform.billing.profile_repository import BillingProfileRepository
from studyhall.schemas.billing import (
    CardSummary,
    PaymentMethodSummary,
    SetupCompleteResult,
    SetupIntentResult,
    UserBillingProfile,
)
from studyhall.schemas.processor import OWNER_METADATA_KEY

_USABLE_SETUP_STATUSES = {"succeeded", "processing"}


class PaymentMethodService:
    """Reads and replaces the card a user is billed with."""

    def __init__(self, stripe: StripeClient, repository: BillingProfileRepository):
        """Initialize with the Stripe client and the profile repository."""
        self.stripe = stripe
        self.repository = repository

    async def find_card(
        self,
        profile: UserBillingProfile,
        log: Optional[ContextualLogger] = None,
    ) -> Optional[CardSummary]:
        """Card the next invoice would be charged to, if any.

        The subscription's own default wins over the customer's invoice default.
        Lookup failures read as "no card".
        """
        log = log or logger.with_context(user_id=profile.user_id)
        if not profile.processor_customer_id:
            return None

        try:
            if profile.processor_subscription_id:
                subscription = await self.stripe.get_subscription(
                    profile.processor_subscription_id
                )
                if subscription.default_payment_method_id:
                    method = await self.stripe.get_payment_method(
                        subscription.default_payment_method_id
                    )
                    if method.card:
                        return method.card

            customer = await self.stripe.get_customer(profile.processor_customer_id)
            if customer.default_payment_method and customer.default_payment_method.card:
                return customer.default_payment_method.card
        except ProcessorError as e:
            log.warning(f"Payment method lookup failed: {e.message}")
        return None

    async def get_summary(
        self,
        user_id: str,
        profile: Optional[UserBillingProfile] = None,
        log: Optional[ContextualLogger] = None,
    ) -> PaymentMethodSummary:
        """Saved card summary of a user."""
        profile = profile or await self.repository.get_profile(user_id)
        card = await self.find_card(profile, log)
        return PaymentMethodSummary.from_card(bool(profile.processor_customer_id), card)

    async def create_setup_intent(
        self, user_id: str, log: Optional[ContextualLogger] = None
    ) -> SetupIntentResult:
        """Start collecting a replacement card without charging it."""
        log = log or logger.with_context(user_id=user_id)
        profile = await self.repository.get_profile(user_id)
        if not profile.processor_customer_id:
            raise InvalidRequestError("No billing customer yet; subscribe first")

        intent = await self.stripe.create_setup_intent(
            profile.processor_customer_id,
            metadata={OWNER_METADATA_KEY: user_id},
            idempotency_key=f"setup_intent_{user_id}_{int(time.time())}",
        )
        if not intent.client_secret:
            raise InvalidRequestError("Setup intent has no client secret")
        log.info(f"Created setup intent {intent.id}")
        return SetupIntentResult(setup_intent_id=intent.id, client_secret=intent.client_secret)

    async def complete_setup(
        self,
        user_id: str,
        setup_intent_id: str,
        log: Optional[ContextualLogger] = None,
    ) -> SetupCompleteResult:
        """Make the card collected by a setup intent the default for future invoices."""
        log = log or logger.with_context(user_id=user_id)
        profile = await self.repository.get_profile(user_id)
        if not profile.processor_customer_id:
            raise InvalidRequestError("No billing customer yet; subscribe first")

        intent = await self.stripe.get_setup_intent(setup_intent_id)
        if intent.customer_id != profile.processor_customer_id:
            log.warning(f"Setup intent {setup_intent_id} belongs to another customer")
            raise PermissionException("Setup intent does not belong to this user")
        if intent.status not in _USABLE_SETUP_STATUSES:
            raise InvalidRequestError(f"Setup intent is not complete (status: {intent.status})")
        if not intent.payment_method_id:
            raise InvalidRequestError("Setup intent has no payment method")

        await self.stripe.set_default_payment_method(
            profile.processor_customer_id, intent.payment_method_id
        )
        log.info(f"Set {intent.payment_method_id} as the customer default payment method")

        if profile.processor_subscription_id:
            try:
                await self.stripe.update_subscription(
                    profile.processor_subscription_id,
                    default_payment_method=intent.payment_method_id,
                )
            except ProcessorError as e:
                log.warning(f"Could not set the subscription default payment method: {e.message}")

        card = None
        try:
            card = (await self.stripe.get_payment_method(intent.payment_method_id)).card
        except ProcessorError as e:
            log.warning(f"Could not read back the new payment method: {e.message}")
        return SetupCompleteResult(payment_method=card)
