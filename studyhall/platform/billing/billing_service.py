"""Main billing service orchestrator.

This module coordinates tier transitions by orchestrating between the tier
policy, the profile repository and the Stripe client. Stripe is the source of
truth: once a Stripe mutation succeeded, a failed profile write is logged and
left for the webhook reconciler to repair.
"""

import time
from typing import Optional

from studyhall.core.config import Settings, settings as default_settings
from studyhall.core.exceptions import (
    IncompleteProcessorResponseError,
    InvalidRequestError,
    InvalidTierError,
    NoActiveSubscriptionError,
    NoPendingChangeError,
    PaymentRequiredError,
    PermissionException,
    ProcessorError,
    ProfileStoreError,
    SubscriptionConflictError,
)
from studyhall.core.logging import ContextualLogger, logger
from studyhall.integrations.stripe_client import StripeClient
from studyhall.platform.billing.lease import TransitionLease
from studyhall.platform.billing.payment_methods import PaymentMethodService
from studyhall.platform.billing.plan_logic import (
    TierPolicy,
    TransitionAction,
    TransitionContext,
    analyze_transition,
    build_downgrade_phases,
    parse_tier,
    rank,
)
from studyhall.platform.billing.profile_repository import BillingProfileRepository
from studyhall.schemas.billing import (
    BillingInterval,
    BillingSummary,
    CancelPendingChangeResult,
    CheckoutCompleteResult,
    CheckoutResult,
    ConfirmPaymentResult,
    SubscriptionIntentResult,
    SwitchToFreeResult,
    Tier,
    TransitionMode,
    TransitionResult,
    UserBillingProfile,
    UserBillingProfileUpdate,
)
from studyhall.schemas.processor import (
    OWNER_METADATA_KEY,
    TIER_METADATA_KEY,
    ProcessorInvoice,
    ProcessorSchedule,
    ProcessorSubscription,
    SubscriptionItem,
)

_CONFIRMABLE_STATUSES = {"active", "trialing", "incomplete"}
_ENDED_STATUSES = {"canceled", "incomplete_expired"}
_CHECKOUT_PAID_STATUSES = {"paid", "no_payment_required"}


class BillingService:
    """Service for managing user tiers and subscriptions."""

    def __init__(
        self,
        stripe: StripeClient,
        repository: BillingProfileRepository,
        policy: TierPolicy,
        lease: Optional[TransitionLease] = None,
        settings: Optional[Settings] = None,
        payment_methods: Optional[PaymentMethodService] = None,
    ):
        """Initialize billing service."""
        self.stripe = stripe
        self.repository = repository
        self.policy = policy
        self.lease = lease or TransitionLease()
        self.settings = settings or default_settings
        self.payment_methods = payment_methods or PaymentMethodService(stripe, repository)

    # ------------------------------ Helpers (internal) ------------------------------ #

    @staticmethod
    def _log(user_id: str, log: Optional[ContextualLogger]) -> ContextualLogger:
        return log or logger.with_context(user_id=user_id)

    @staticmethod
    def _check_ownership(
        user_id: str,
        profile: UserBillingProfile,
        subscription: ProcessorSubscription,
        log: ContextualLogger,
        strict: bool = False,
    ) -> None:
        """Reject subscriptions that belong to someone else.

        With ``strict`` the subscription must positively identify the user, through
        its owner tag or the profile's customer id; use it for ids supplied by the
        client rather than read from the profile.
        """
        owner = subscription.owner_id
        if owner and owner != user_id:
            log.warning(f"Subscription {subscription.id} is tagged with another user")
            raise PermissionException("Subscription does not belong to this user")

        customer_id = profile.processor_customer_id
        if customer_id and subscription.customer_id and subscription.customer_id != customer_id:
            log.warning(f"Subscription {subscription.id} belongs to another customer")
            raise PermissionException("Subscription does not belong to this user")

        if strict and owner != user_id and not (
            customer_id and subscription.customer_id == customer_id
        ):
            log.warning(f"Subscription {subscription.id} cannot be attributed to the user")
            raise PermissionException("Subscription does not belong to this user")

    @staticmethod
    def _require_item(subscription: ProcessorSubscription) -> SubscriptionItem:
        item = subscription.primary_item
        if item is None or not item.price_id:
            raise IncompleteProcessorResponseError(
                f"Subscription {subscription.id} has no priced item"
            )
        return item

    async def _write_profile(
        self,
        user_id: str,
        update: UserBillingProfileUpdate,
        profile: UserBillingProfile,
        log: ContextualLogger,
    ) -> UserBillingProfile:
        """Write the profile after a Stripe mutation already succeeded."""
        try:
            return await self.repository.update_profile(user_id, update, current=profile, log=log)
        except ProfileStoreError as e:
            log.error(
                f"Profile write failed after a Stripe change; leaving it to the webhook "
                f"reconciler: {e.message}"
            )
            return update.apply_to(profile)

    async def _drop_pending_change(
        self, user_id: str, profile: UserBillingProfile, log: ContextualLogger
    ) -> UserBillingProfile:
        """Forget a scheduled change whose Stripe side was just removed."""
        if profile.pending_tier is None and profile.pending_tier_effective is None:
            return profile
        log.info("Stripe no longer carries the pending change; clearing it")
        return await self._write_profile(
            user_id, UserBillingProfileUpdate.clear_pending(), profile, log
        )

    async def _release_schedule_quietly(self, schedule_id: str, log: ContextualLogger) -> None:
        try:
            await self.stripe.release_schedule(schedule_id)
            log.info(f"Released subscription schedule {schedule_id}")
        except ProcessorError as e:
            log.warning(f"Could not release subscription schedule {schedule_id}: {e.message}")

    async def _cancel_superseded(
        self, profile: UserBillingProfile, new_subscription_id: str, log: ContextualLogger
    ) -> None:
        """Cancel the previously tracked subscription when a new one replaces it."""
        previous = profile.processor_subscription_id
        if not previous or previous == new_subscription_id:
            return
        try:
            await self.stripe.cancel_subscription(previous)
            log.info(f"Canceled superseded subscription {previous}")
        except ProcessorError as e:
            log.warning(f"Could not cancel superseded subscription {previous}: {e.message}")

    async def _ensure_no_live_subscription(
        self, profile: UserBillingProfile, log: ContextualLogger
    ) -> None:
        if not profile.processor_subscription_id:
            return
        try:
            existing = await self.stripe.get_subscription(profile.processor_subscription_id)
        except ProcessorError as e:
            if not e.is_not_found:
                raise
            log.info(f"Tracked subscription {profile.processor_subscription_id} no longer exists")
            return
        if existing.is_live:
            raise SubscriptionConflictError(
                "A subscription is already active; change tiers instead"
            )

    def _paid_tier(self, tier) -> Tier:
        desired = parse_tier(tier)
        if not desired.is_paid:
            raise InvalidTierError(tier=desired.value, message="A paid tier is required")
        return desired

    # ------------------------------ Tier transitions ------------------------------ #

    async def request_transition(
        self,
        user_id: str,
        desired_tier,
        interval: Optional[BillingInterval] = None,
        log: Optional[ContextualLogger] = None,
    ) -> TransitionResult:
        """Change the tier of a user.

        Upgrades apply now with prorations, paid downgrades wait for the period
        boundary through a subscription schedule, and a move to free cancels at
        period end. See ``analyze_transition`` for the classification.
        """
        desired = parse_tier(desired_tier)
        log = self._log(user_id, log)

        async with self.lease.hold(user_id):
            profile = await self.repository.get_profile(user_id)
            decision = analyze_transition(
                TransitionContext(
                    current_tier=profile.tier,
                    desired_tier=desired,
                    has_subscription=bool(profile.processor_subscription_id),
                )
            )
            log.info(f"Tier change {profile.tier.value} -> {desired.value}: {decision.message}")

            if decision.action == TransitionAction.FREE_IMMEDIATE:
                update = UserBillingProfileUpdate.clear_pending(
                    tier=Tier.FREE,
                    processor_subscription_status="free",
                    pending_payment_invoice_id=None,
                    pending_payment_tier=None,
                )
                await self.repository.update_profile(user_id, update, current=profile, log=log)
                return TransitionResult(mode=TransitionMode.FREE_IMMEDIATE, tier=Tier.FREE)

            if decision.action == TransitionAction.REJECT_NO_SUBSCRIPTION:
                raise NoActiveSubscriptionError(decision.message)

            subscription = await self.stripe.get_subscription(profile.processor_subscription_id)
            self._check_ownership(user_id, profile, subscription, log)
            self._require_item(subscription)

            if decision.action == TransitionAction.CANCEL_AT_PERIOD_END:
                return await self._cancel_at_period_end(user_id, profile, subscription, log)

            target_interval = interval or self.policy.interval_from_recurring(
                subscription.recurring_interval
            )
            price_id = self.policy.require_price_id(desired, target_interval)

            if subscription.cancel_at_period_end:
                await self.stripe.set_cancel_at_period_end(subscription.id, False)
                log.info(f"Cleared cancel-at-period-end on {subscription.id}")
                subscription = await self.stripe.get_subscription(subscription.id)
                profile = await self._drop_pending_change(user_id, profile, log)

            if decision.action == TransitionAction.SCHEDULE_DOWNGRADE:
                return await self._schedule_downgrade(
                    user_id, profile, subscription, desired, target_interval, price_id, log
                )
            return await self._apply_now(
                user_id, profile, subscription, desired, target_interval, price_id, log
            )

    async def _cancel_at_period_end(
        self,
        user_id: str,
        profile: UserBillingProfile,
        subscription: ProcessorSubscription,
        log: ContextualLogger,
    ) -> TransitionResult:
        if subscription.current_period_end is None:
            raise IncompleteProcessorResponseError(
                f"Subscription {subscription.id} has no current period end"
            )
        if subscription.schedule_id:
            await self._release_schedule_quietly(subscription.schedule_id, log)

        updated = await self.stripe.set_cancel_at_period_end(subscription.id, True)
        period_end = updated.current_period_end or subscription.current_period_end
        log.info(f"Subscription {subscription.id} set to cancel at {period_end}")

        await self._write_profile(
            user_id,
            UserBillingProfileUpdate(
                pending_tier=Tier.FREE,
                pending_tier_effective=period_end,
                pending_billing_interval=None,
                processor_subscription_status=updated.status,
            ),
            profile,
            log,
        )
        return TransitionResult(
            mode=TransitionMode.DOWNGRADE_SCHEDULED,
            tier=profile.tier,
            effective_date=period_end,
            subscription_id=subscription.id,
        )

    async def _get_or_create_schedule(
        self, subscription: ProcessorSubscription, log: ContextualLogger
    ) -> ProcessorSchedule:
        if subscription.schedule_id:
            schedule = await self.stripe.get_schedule(subscription.schedule_id)
            if schedule.is_reusable:
                return schedule
            log.info(f"Schedule {schedule.id} is {schedule.status}; creating a new one")

        schedule = await self.stripe.create_schedule_from_subscription(subscription.id)
        log.info(f"Created subscription schedule {schedule.id} for {subscription.id}")
        if not schedule.phases:
            schedule = await self.stripe.get_schedule(schedule.id)
        return schedule

    async def _schedule_downgrade(
        self,
        user_id: str,
        profile: UserBillingProfile,
        subscription: ProcessorSubscription,
        desired: Tier,
        interval: BillingInterval,
        price_id: str,
        log: ContextualLogger,
    ) -> TransitionResult:
        item = self._require_item(subscription)
        period_end = subscription.current_period_end
        if period_end is None:
            raise IncompleteProcessorResponseError(
                f"Subscription {subscription.id} has no current period end"
            )

        schedule = await self._get_or_create_schedule(subscription, log)
        phase_start = schedule.phases[0].start_date if schedule.phases else None
        if phase_start is None:
            raise IncompleteProcessorResponseError(
                f"Schedule {schedule.id} has no current phase start date"
            )

        phases = build_downgrade_phases(
            current_price_id=item.price_id,
            next_price_id=price_id,
            quantity=item.quantity,
            phase_start=phase_start,
            period_end=period_end,
        )
        await self.stripe.update_schedule_phases(schedule.id, phases)
        log.info(f"Scheduled switch to {price_id} at {period_end} on schedule {schedule.id}")

        await self._write_profile(
            user_id,
            UserBillingProfileUpdate(
                pending_tier=desired,
                pending_tier_effective=period_end,
                pending_billing_interval=interval,
                processor_subscription_id=subscription.id,
                processor_subscription_status=subscription.status,
            ),
            profile,
            log,
        )
        return TransitionResult(
            mode=TransitionMode.DOWNGRADE_SCHEDULED,
            tier=profile.tier,
            effective_date=period_end,
            subscription_id=subscription.id,
        )

    async def _apply_now(  # noqa: C901
        self,
        user_id: str,
        profile: UserBillingProfile,
        subscription: ProcessorSubscription,
        desired: Tier,
        interval: BillingInterval,
        price_id: str,
        log: ContextualLogger,
    ) -> TransitionResult:
        if subscription.schedule_id:
            await self.stripe.release_schedule(subscription.schedule_id)
            log.info(f"Released subscription schedule {subscription.schedule_id}")
            subscription = await self.stripe.get_subscription(subscription.id)
            profile = await self._drop_pending_change(user_id, profile, log)

        item = self._require_item(subscription)
        if item.price_id == price_id and profile.awaiting_payment:
            return await self._resume_pending_payment(
                user_id, profile, subscription, desired, interval, log
            )
        if item.price_id == price_id:
            log.info(f"Price {price_id} already active; committing without a price swap")
            return await self._commit_upgrade(
                user_id, profile, subscription, desired, interval, None, log
            )

        customer_id = subscription.customer_id or profile.processor_customer_id
        if not customer_id:
            raise IncompleteProcessorResponseError(
                f"Subscription {subscription.id} has no customer"
            )

        interval_changes = interval != self.policy.interval_from_recurring(
            subscription.recurring_interval
        )
        subscription = await self.stripe.swap_subscription_price(
            subscription.id,
            item.id,
            price_id,
            billing_cycle_anchor="now" if interval_changes else "unchanged",
        )
        log.info(f"Swapped {subscription.id} from {item.price_id} to {price_id}")

        invoice = await self.stripe.create_invoice(
            customer_id,
            subscription.id,
            metadata={OWNER_METADATA_KEY: user_id, TIER_METADATA_KEY: desired.value},
        )
        if invoice is None and interval_changes and subscription.latest_invoice_id:
            # Resetting the billing cycle invoices immediately
            invoice = await self.stripe.get_invoice(subscription.latest_invoice_id)

        if invoice is not None and invoice.status == "draft":
            invoice = await self.stripe.finalize_invoice(invoice.id)

        if invoice is not None and invoice.amount_due > 0 and invoice.status == "open":
            profile = await self._write_profile(
                user_id,
                UserBillingProfileUpdate.clear_pending(
                    pending_payment_invoice_id=invoice.id,
                    pending_payment_tier=desired,
                ),
                profile,
                log,
            )
            invoice = await self.stripe.pay_invoice(invoice.id)
            if not invoice.payment_succeeded:
                secret = invoice.client_secret
                if not secret:
                    log.warning(f"Invoice {invoice.id} unpaid with no way to confirm it")
                    raise PaymentRequiredError(payment_status=invoice.status)
                log.info(f"Invoice {invoice.id} needs customer action before the upgrade")
                return TransitionResult(
                    mode=TransitionMode.PAYMENT_REQUIRED,
                    tier=profile.tier,
                    subscription_id=subscription.id,
                    invoice_id=invoice.id,
                    client_secret=secret,
                    amount_due=invoice.amount_due,
                    currency=invoice.currency,
                )
            log.info(f"Invoice {invoice.id} paid ({invoice.amount_due} {invoice.currency})")

        return await self._commit_upgrade(
            user_id, profile, subscription, desired, interval, invoice, log
        )

    async def _resume_pending_payment(
        self,
        user_id: str,
        profile: UserBillingProfile,
        subscription: ProcessorSubscription,
        desired: Tier,
        interval: BillingInterval,
        log: ContextualLogger,
    ) -> TransitionResult:
        """Repeat of an upgrade whose price is on Stripe but whose invoice may be unpaid."""
        invoice = await self.stripe.get_invoice(profile.pending_payment_invoice_id)
        if invoice.payment_succeeded:
            log.info(f"Invoice {invoice.id} was paid; committing the upgrade")
            return await self._commit_upgrade(
                user_id, profile, subscription, desired, interval, invoice, log
            )

        secret = invoice.client_secret
        if invoice.status != "open" or not secret:
            log.warning(f"Invoice {invoice.id} is {invoice.status} and cannot be confirmed")
            raise PaymentRequiredError(payment_status=invoice.status)
        log.info(f"Invoice {invoice.id} still awaits customer action")
        return TransitionResult(
            mode=TransitionMode.PAYMENT_REQUIRED,
            tier=profile.tier,
            subscription_id=subscription.id,
            invoice_id=invoice.id,
            client_secret=secret,
            amount_due=invoice.amount_due,
            currency=invoice.currency,
        )

    async def _commit_upgrade(
        self,
        user_id: str,
        profile: UserBillingProfile,
        subscription: ProcessorSubscription,
        desired: Tier,
        interval: BillingInterval,
        invoice: Optional[ProcessorInvoice],
        log: ContextualLogger,
    ) -> TransitionResult:
        await self._write_profile(
            user_id,
            UserBillingProfileUpdate.clear_pending(
                tier=desired,
                billing_interval=interval,
                processor_subscription_id=subscription.id,
                processor_subscription_status=subscription.status,
                pending_payment_invoice_id=None,
                pending_payment_tier=None,
            ),
            profile,
            log,
        )
        charged = invoice is not None and invoice.amount_due > 0
        return TransitionResult(
            mode=TransitionMode.UPGRADED,
            tier=desired,
            subscription_id=subscription.id,
            invoice_id=invoice.id if charged else None,
            amount_due=invoice.amount_due if charged else None,
            currency=invoice.currency if charged else None,
        )

    async def cancel_pending_change(
        self, user_id: str, log: Optional[ContextualLogger] = None
    ) -> CancelPendingChangeResult:
        """Undo a scheduled downgrade or a pending cancellation."""
        log = self._log(user_id, log)

        async with self.lease.hold(user_id):
            profile = await self.repository.get_profile(user_id)
            if not profile.processor_subscription_id:
                raise NoActiveSubscriptionError()

            subscription = await self.stripe.get_subscription(profile.processor_subscription_id)
            self._check_ownership(user_id, profile, subscription, log)

            if not subscription.schedule_id and not subscription.cancel_at_period_end:
                if not profile.has_pending_change:
                    raise NoPendingChangeError()
                log.info("Stripe has no pending change; clearing the stale profile record")

            if subscription.schedule_id:
                await self.stripe.release_schedule(subscription.schedule_id)
                log.info(f"Released subscription schedule {subscription.schedule_id}")
            if subscription.cancel_at_period_end:
                await self.stripe.set_cancel_at_period_end(subscription.id, False)
                log.info(f"Cleared cancel-at-period-end on {subscription.id}")

            subscription = await self.stripe.get_subscription(subscription.id)
            tier = self.policy.tier_from_price_id(subscription.price_id)
            interval = self.policy.interval_from_recurring(subscription.recurring_interval)

            fields: dict = {"processor_subscription_status": subscription.status}
            if profile.awaiting_payment and rank(tier) > rank(profile.tier):
                tier = profile.tier
            else:
                fields.update(tier=tier, billing_interval=interval)

            await self._write_profile(
                user_id, UserBillingProfileUpdate.clear_pending(**fields), profile, log
            )
            return CancelPendingChangeResult(tier=tier, interval=interval)

    # ------------------------------ Signup ------------------------------ #

    async def ensure_customer(
        self,
        user_id: str,
        profile: Optional[UserBillingProfile] = None,
        log: Optional[ContextualLogger] = None,
    ) -> str:
        """Stripe customer id of a user, creating the customer on first use."""
        log = self._log(user_id, log)
        profile = profile or await self.repository.get_profile(user_id)
        if profile.processor_customer_id:
            return profile.processor_customer_id

        user = await self.repository.get_user(user_id)
        customer = await self.stripe.create_customer(
            email=user.email,
            name=user.full_name,
            metadata={OWNER_METADATA_KEY: user_id},
            idempotency_key=f"customer_{user_id}",
        )
        log.info(f"Created Stripe customer {customer.id}")
        await self._write_profile(
            user_id, UserBillingProfileUpdate(processor_customer_id=customer.id), profile, log
        )
        return customer.id

    async def create_subscription(
        self,
        user_id: str,
        tier,
        payment_method_id: Optional[str],
        interval: Optional[BillingInterval] = None,
        log: Optional[ContextualLogger] = None,
    ) -> SubscriptionIntentResult:
        """Start a paid subscription whose first payment the client confirms.

        The tier is not granted here; ``confirm_payment`` or the webhook does that
        once the payment went through.
        """
        desired = self._paid_tier(tier)
        if not payment_method_id:
            raise InvalidRequestError("A payment method is required")
        interval = interval or BillingInterval.MONTH
        price_id = self.policy.require_price_id(desired, interval)
        log = self._log(user_id, log)

        async with self.lease.hold(user_id):
            profile = await self.repository.get_profile(user_id)
            await self._ensure_no_live_subscription(profile, log)

            customer_id = await self.ensure_customer(user_id, profile, log)
            await self.stripe.attach_payment_method(payment_method_id, customer_id)
            await self.stripe.set_default_payment_method(customer_id, payment_method_id)

            subscription = await self.stripe.create_subscription(
                customer_id,
                price_id,
                metadata={OWNER_METADATA_KEY: user_id, TIER_METADATA_KEY: desired.value},
                default_payment_method=payment_method_id,
                idempotency_key=f"sub_{user_id}_{desired.value}_{payment_method_id}",
            )
            log.info(f"Created subscription {subscription.id} ({subscription.status})")

            invoice = subscription.latest_invoice
            secret = invoice.client_secret if invoice else None
            if not secret:
                raise IncompleteProcessorResponseError(
                    f"Subscription {subscription.id} has no payment to confirm"
                )
            return SubscriptionIntentResult(subscription_id=subscription.id, client_secret=secret)

    async def confirm_payment(
        self,
        user_id: str,
        subscription_id: str,
        invoice_id: Optional[str] = None,
        log: Optional[ContextualLogger] = None,
    ) -> ConfirmPaymentResult:
        """Grant the tier of a subscription whose payment the client just confirmed.

        The tier is derived from the subscription's live price, never from the
        request.
        """
        log = self._log(user_id, log)

        async with self.lease.hold(user_id):
            profile = await self.repository.get_profile(user_id)
            subscription = await self.stripe.get_subscription(subscription_id)
            self._check_ownership(user_id, profile, subscription, log, strict=True)

            if subscription.status not in _CONFIRMABLE_STATUSES:
                raise PaymentRequiredError(payment_status=subscription.status)

            invoice = None
            if invoice_id:
                invoice = await self.stripe.get_invoice(invoice_id)
                if invoice.subscription_id != subscription.id:
                    log.warning(f"Invoice {invoice_id} is not an invoice of {subscription.id}")
                    raise PermissionException("Invoice does not belong to this subscription")
            elif subscription.status == "incomplete" and subscription.latest_invoice_id:
                invoice = await self.stripe.get_invoice(subscription.latest_invoice_id)

            if invoice is not None and not invoice.payment_succeeded:
                raise PaymentRequiredError(payment_status=invoice.status)
            if invoice is None and subscription.status == "incomplete":
                raise PaymentRequiredError(payment_status=subscription.status)

            if not self.policy.is_known_price(subscription.price_id):
                raise InvalidRequestError(f"Subscription {subscription.id} is not on a known price")
            tier = self.policy.tier_from_price_id(subscription.price_id)
            interval = self.policy.interval_from_recurring(subscription.recurring_interval)

            await self._cancel_superseded(profile, subscription.id, log)

            fields: dict = {
                "tier": tier,
                "billing_interval": interval,
                "processor_subscription_id": subscription.id,
                "processor_subscription_status": (
                    "active" if subscription.status == "incomplete" else subscription.status
                ),
                "pending_payment_invoice_id": None,
                "pending_payment_tier": None,
            }
            if subscription.customer_id:
                fields["processor_customer_id"] = subscription.customer_id
            await self.repository.update_profile(
                user_id, UserBillingProfileUpdate.clear_pending(**fields), current=profile, log=log
            )
            log.info(f"Confirmed payment; tier is now {tier.value}")
            return ConfirmPaymentResult(tier=tier, subscription_id=subscription.id)

    # ------------------------------ Hosted checkout ------------------------------ #

    def _redirect_base(self, origin: Optional[str]) -> str:
        allowed = {self.settings.app_url, *self.settings.cors_origins}
        if origin and origin.rstrip("/") in allowed:
            return origin.rstrip("/")
        return self.settings.app_url

    async def start_checkout(
        self,
        user_id: str,
        tier,
        interval: Optional[BillingInterval] = None,
        origin: Optional[str] = None,
        log: Optional[ContextualLogger] = None,
    ) -> CheckoutResult:
        """Create a hosted checkout session for a paid tier."""
        desired = self._paid_tier(tier)
        interval = interval or BillingInterval.MONTH
        price_id = self.policy.require_price_id(desired, interval)
        log = self._log(user_id, log)

        profile = await self.repository.get_profile(user_id)
        await self._ensure_no_live_subscription(profile, log)
        customer_id = await self.ensure_customer(user_id, profile, log)

        base = self._redirect_base(origin)
        session = await self.stripe.create_checkout_session(
            customer_id,
            price_id,
            success_url=f"{base}/get-started?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base}/get-started?canceled=1",
            client_reference_id=user_id,
            metadata={OWNER_METADATA_KEY: user_id, TIER_METADATA_KEY: desired.value},
            idempotency_key=f"checkout_{user_id}_{desired.value}_{int(time.time())}",
        )
        if not session.url:
            raise IncompleteProcessorResponseError(f"Checkout session {session.id} has no URL")
        log.info(f"Created checkout session {session.id} for {desired.value}")
        return CheckoutResult(url=session.url, session_id=session.id)

    async def complete_checkout(
        self, user_id: str, session_id: str, log: Optional[ContextualLogger] = None
    ) -> CheckoutCompleteResult:
        """Record the subscription a finished hosted checkout created."""
        log = self._log(user_id, log)

        async with self.lease.hold(user_id):
            session = await self.stripe.get_checkout_session(session_id)
            reference = session.client_reference_id or session.metadata.get(OWNER_METADATA_KEY)
            if reference != user_id:
                log.warning(f"Checkout session {session_id} belongs to another user")
                raise PermissionException("Checkout session does not belong to this user")

            try:
                tier = parse_tier(session.metadata.get(TIER_METADATA_KEY))
            except InvalidTierError:
                tier = Tier.FREE
            if not tier.is_paid:
                raise InvalidRequestError("Checkout session has no paid tier")

            if (
                session.payment_status not in _CHECKOUT_PAID_STATUSES
                and session.status != "complete"
            ):
                raise InvalidRequestError(
                    f"Checkout is not paid (status: {session.payment_status or session.status})"
                )

            profile = await self.repository.get_profile(user_id)
            fields: dict = {
                "tier": tier,
                "pending_payment_invoice_id": None,
                "pending_payment_tier": None,
            }
            if session.customer_id:
                fields["processor_customer_id"] = session.customer_id
            if session.subscription_id:
                await self._cancel_superseded(profile, session.subscription_id, log)
                subscription = await self.stripe.get_subscription(session.subscription_id)
                fields.update(
                    processor_subscription_id=subscription.id,
                    processor_subscription_status=subscription.status,
                    billing_interval=self.policy.interval_from_recurring(
                        subscription.recurring_interval
                    ),
                )

            await self.repository.update_profile(
                user_id, UserBillingProfileUpdate.clear_pending(**fields), current=profile, log=log
            )
            log.info(f"Checkout {session_id} completed; tier is now {tier.value}")
            return CheckoutCompleteResult(tier=tier, subscription_id=session.subscription_id)

    # ------------------------------ Immediate cancellation ------------------------------ #

    async def switch_to_free_now(
        self, user_id: str, log: Optional[ContextualLogger] = None
    ) -> SwitchToFreeResult:
        """Cancel the subscription immediately and drop to the free tier."""
        log = self._log(user_id, log)

        async with self.lease.hold(user_id):
            profile = await self.repository.get_profile(user_id)
            subscription_id = profile.processor_subscription_id
            subscription = None
            if subscription_id:
                try:
                    subscription = await self.stripe.get_subscription(subscription_id)
                except ProcessorError as e:
                    if not e.is_not_found:
                        raise
                    log.info(f"Tracked subscription {subscription_id} no longer exists")

            if subscription is not None:
                self._check_ownership(user_id, profile, subscription, log)
                if subscription.status not in _ENDED_STATUSES:
                    try:
                        await self.stripe.cancel_subscription(subscription.id)
                        log.info(f"Canceled subscription {subscription.id} immediately")
                    except ProcessorError as e:
                        if not e.is_not_found:
                            raise
                        log.info(f"Subscription {subscription.id} was already gone")

            update = UserBillingProfileUpdate.clear_pending(
                tier=Tier.FREE,
                processor_subscription_id=None,
                processor_subscription_status="free",
                pending_payment_invoice_id=None,
                pending_payment_tier=None,
            )
            if subscription is not None:
                await self._write_profile(user_id, update, profile, log)
            else:
                await self.repository.update_profile(user_id, update, current=profile, log=log)
            return SwitchToFreeResult()

    # ------------------------------ Read models ------------------------------ #

    async def get_billing_summary(
        self, user_id: str, log: Optional[ContextualLogger] = None
    ) -> BillingSummary:
        """Billing state for the subscription page."""
        profile = await self.repository.get_profile(user_id)
        payment_method = await self.payment_methods.get_summary(user_id, profile, log)
        return BillingSummary(
            tier=profile.tier,
            billing_interval=profile.billing_interval,
            pending_tier=profile.pending_tier,
            pending_tier_effective=profile.pending_tier_effective,
            pending_billing_interval=profile.pending_billing_interval,
            subscription_status=profile.processor_subscription_status,
            has_subscription=bool(profile.processor_subscription_id),
            awaiting_payment=profile.awaiting_payment,
            payment_method=payment_method,
        )
