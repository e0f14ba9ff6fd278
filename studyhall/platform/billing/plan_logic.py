"""Pure business logic for billing operations.

This module contains the tier policy and the decision rules for tier changes,
previews and reconciliation, separated from infrastructure concerns like the
identity provider and the Stripe API.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from dateutil.relativedelta import relativedelta

from studyhall.core.exceptions import InvalidTierError, MissingPriceConfigurationError
from studyhall.core.logging import logger
from studyhall.schemas.billing import (
    BillingInterval,
    PreviewAction,
    Tier,
    UserBillingProfile,
    UserBillingProfileUpdate,
)
from studyhall.schemas.processor import InvoiceLine, ProcessorSubscription


class TierRank(Enum):
    """Tier hierarchy for upgrade/downgrade decisions."""

    FREE = 0
    LESSONS = 1
    LESSONS_AI = 2

    @classmethod
    def from_tier(cls, tier: Tier) -> "TierRank":
        """Convert Tier to TierRank."""
        mapping = {
            Tier.FREE: cls.FREE,
            Tier.LESSONS: cls.LESSONS,
            Tier.LESSONS_AI: cls.LESSONS_AI,
        }
        return mapping[tier]


class ChangeType(Enum):
    """Type of tier change."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    SAME = "same"


def parse_tier(value) -> Tier:
    """Parse a client-supplied tier name."""
    if isinstance(value, Tier):
        return value
    if value is None or not str(value).strip():
        raise InvalidTierError(message="Missing tier")
    try:
        return Tier(str(value).strip().lower())
    except ValueError:
        raise InvalidTierError(tier=str(value)) from None


def rank(tier: Tier) -> int:
    """Position of a tier in the total order free < lessons < lessons_ai."""
    return TierRank.from_tier(tier).value


def compare_tiers(current: Tier, desired: Tier) -> ChangeType:
    """Compare two tiers to determine change type."""
    current_rank = rank(current)
    desired_rank = rank(desired)

    if desired_rank > current_rank:
        return ChangeType.UPGRADE
    elif desired_rank < current_rank:
        return ChangeType.DOWNGRADE
    else:
        return ChangeType.SAME


# ---------------------------------------------------------------------------
# Tier policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceCatalog:
    """Immutable mapping of (paid tier, interval) to processor price id.

    Built once at startup and injected wherever prices are needed. A price id
    may appear only once: two tiers sharing a price would make the inverse
    lookup ambiguous.
    """

    prices: Mapping[tuple[Tier, BillingInterval], str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate and freeze the mapping."""
        seen: dict[str, tuple[Tier, BillingInterval]] = {}
        for (tier, interval), price_id in self.prices.items():
            if not tier.is_paid:
                raise ValueError("The free tier has no processor price")
            if price_id in seen:
                other_tier, other_interval = seen[price_id]
                raise ValueError(
                    f"Price {price_id} is configured for both {other_tier.value} "
                    f"({other_interval.value}) and {tier.value} ({interval.value})"
                )
            seen[price_id] = (tier, interval)
        object.__setattr__(self, "prices", MappingProxyType(dict(self.prices)))

    @classmethod
    def from_settings(cls, settings) -> "PriceCatalog":
        """Build the catalog from the configured price fields, skipping unset ones."""
        lessons_ai_monthly = settings.STRIPE_PRICE_LESSONS_AI_TUTOR_MONTHLY
        lessons_ai_yearly = settings.STRIPE_PRICE_LESSONS_AI_TUTOR_YEARLY
        configured = {
            (Tier.LESSONS, BillingInterval.MONTH): settings.STRIPE_PRICE_LESSONS_MONTHLY,
            (Tier.LESSONS, BillingInterval.YEAR): settings.STRIPE_PRICE_LESSONS_YEARLY,
            (Tier.LESSONS_AI, BillingInterval.MONTH): lessons_ai_monthly,
            (Tier.LESSONS_AI, BillingInterval.YEAR): lessons_ai_yearly,
        }
        return cls(prices={key: price for key, price in configured.items() if price})

    def get(self, tier: Tier, interval: BillingInterval) -> Optional[str]:
        """Price id for a tier and interval, if configured."""
        return self.prices.get((tier, interval))

    def lookup(self, price_id: str) -> Optional[tuple[Tier, BillingInterval]]:
        """Tier and interval a price id belongs to, if known."""
        for key, configured in self.prices.items():
            if configured == price_id:
                return key
        return None


class TierPolicy:
    """Maps tiers to processor prices and back."""

    def __init__(self, catalog: PriceCatalog):
        """Initialize with an immutable price catalog."""
        self.catalog = catalog

    def price_id_for_tier(
        self, tier: Tier, interval: BillingInterval = BillingInterval.MONTH
    ) -> Optional[str]:
        """Price id of a paid tier; None for free or when not configured."""
        if not tier.is_paid:
            return None
        return self.catalog.get(tier, interval)

    def require_price_id(self, tier: Tier, interval: BillingInterval) -> str:
        """Price id of a paid tier, failing closed when it is not configured."""
        price_id = self.price_id_for_tier(tier, interval)
        if not price_id:
            raise MissingPriceConfigurationError(tier.value, interval.value)
        return price_id

    def is_known_price(self, price_id: Optional[str]) -> bool:
        """Whether the price id belongs to the catalog."""
        return bool(price_id) and self.catalog.lookup(price_id) is not None

    def tier_from_price_id(self, price_id: Optional[str]) -> Tier:
        """Tier a price id grants.

        Unknown price ids map to free. That keeps entitlement fail-safe, but an
        unknown id on a live subscription usually means a missing price variable,
        so it is logged loudly.
        """
        if not price_id:
            return Tier.FREE
        found = self.catalog.lookup(price_id)
        if found is None:
            logger.warning(
                f"Unrecognized price id {price_id}; treating as free. "
                "Check the configured Stripe price variables."
            )
            return Tier.FREE
        return found[0]

    @staticmethod
    def interval_from_recurring(recurring_interval: Optional[str]) -> BillingInterval:
        """Billing interval of a processor recurring interval (anything but year is monthly)."""
        return BillingInterval.YEAR if recurring_interval == "year" else BillingInterval.MONTH


# ---------------------------------------------------------------------------
# Transition decisions
# ---------------------------------------------------------------------------


class TransitionAction(Enum):
    """What the transition engine must do for a requested tier."""

    FREE_IMMEDIATE = "free_immediate"
    REJECT_NO_SUBSCRIPTION = "reject_no_subscription"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    SCHEDULE_DOWNGRADE = "schedule_downgrade"
    APPLY_IMMEDIATELY = "apply_immediately"


@dataclass
class TransitionContext:
    """Context for tier change decisions."""

    current_tier: Tier
    desired_tier: Tier
    has_subscription: bool


@dataclass
class TransitionDecision:
    """Result of tier change analysis."""

    action: TransitionAction
    change_type: ChangeType
    message: str


def analyze_transition(context: TransitionContext) -> TransitionDecision:
    """Decide how a tier change request is carried out.

    Downgrades between paid tiers wait for the period boundary, a downgrade to
    free cancels at period end, everything else applies now.
    """
    change_type = compare_tiers(context.current_tier, context.desired_tier)

    if not context.has_subscription:
        if context.desired_tier is Tier.FREE:
            return TransitionDecision(
                action=TransitionAction.FREE_IMMEDIATE,
                change_type=change_type,
                message="No subscription; switching to free immediately",
            )
        return TransitionDecision(
            action=TransitionAction.REJECT_NO_SUBSCRIPTION,
            change_type=change_type,
            message="No active subscription; start a subscription first",
        )

    if context.desired_tier is Tier.FREE:
        return TransitionDecision(
            action=TransitionAction.CANCEL_AT_PERIOD_END,
            change_type=change_type,
            message="Subscription will end at the close of the current period",
        )

    if change_type == ChangeType.DOWNGRADE:
        return TransitionDecision(
            action=TransitionAction.SCHEDULE_DOWNGRADE,
            change_type=change_type,
            message=f"Switching to {context.desired_tier.value} at the end of the current period",
        )

    return TransitionDecision(
        action=TransitionAction.APPLY_IMMEDIATELY,
        change_type=change_type,
        message=f"Switching to {context.desired_tier.value} now",
    )


def build_downgrade_phases(
    current_price_id: str,
    next_price_id: str,
    quantity: int,
    phase_start: int,
    period_end: int,
) -> list[dict]:
    """Two-phase schedule: the current price until the period ends, then the new one.

    ``phase_start`` must be the schedule's own phase 0 start date; the processor
    rejects edits that move the start of a phase already in progress.
    """
    return [
        {
            "items": [{"price": current_price_id, "quantity": quantity}],
            "start_date": phase_start,
            "end_date": period_end,
        },
        {
            "items": [{"price": next_price_id, "quantity": quantity}],
            "start_date": period_end,
        },
    ]


# ---------------------------------------------------------------------------
# Preview decisions
# ---------------------------------------------------------------------------


@dataclass
class PreviewContext:
    """Context for preview decisions."""

    current_tier: Tier
    desired_tier: Tier
    has_subscription: bool


@dataclass
class PreviewDecision:
    """Result of preview analysis."""

    action: PreviewAction
    needs_invoice_preview: bool = False
    needs_price_lookup: bool = False


def analyze_preview(context: PreviewContext) -> PreviewDecision:
    """Classify a previewed change the same way the transition engine would."""
    if not context.has_subscription:
        if context.desired_tier is Tier.FREE:
            if context.current_tier is Tier.FREE:
                return PreviewDecision(action=PreviewAction.NONE)
            return PreviewDecision(action=PreviewAction.SWITCH_TO_FREE_IMMEDIATE)
        return PreviewDecision(action=PreviewAction.SIGNUP, needs_price_lookup=True)

    if context.desired_tier is Tier.FREE:
        return PreviewDecision(action=PreviewAction.CANCEL_TO_FREE)

    change_type = compare_tiers(context.current_tier, context.desired_tier)
    if change_type == ChangeType.DOWNGRADE:
        return PreviewDecision(action=PreviewAction.DOWNGRADE, needs_price_lookup=True)
    if change_type == ChangeType.UPGRADE:
        return PreviewDecision(action=PreviewAction.UPGRADE, needs_invoice_preview=True)
    return PreviewDecision(action=PreviewAction.NONE, needs_invoice_preview=True)


def split_proration_lines(lines: Iterable[InvoiceLine]) -> tuple[int, int]:
    """Split preview lines into (due now, next period amount).

    Proration lines are charged immediately; the rest is the next regular
    invoice. A net credit is never reported as a negative amount due.
    """
    proration_total = 0
    regular_total = 0
    for line in lines:
        if line.proration:
            proration_total += line.amount
        else:
            regular_total += line.amount
    return max(0, proration_total), regular_total


def estimate_next_payment_at(
    now: datetime, recurring_interval: Optional[str], interval_count: int = 1
) -> int:
    """Estimate the first renewal of a new subscription, as a unix timestamp.

    The processor computes exact period boundaries once the subscription exists;
    calendar arithmetic is close enough for showing a date before signup.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    count = max(1, interval_count or 1)
    steps = {
        "day": relativedelta(days=count),
        "week": relativedelta(weeks=count),
        "month": relativedelta(months=count),
        "year": relativedelta(years=count),
    }
    step = steps.get(recurring_interval or "month", relativedelta(months=1))
    return int((now + step).timestamp())


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def has_unexecuted_schedule(
    subscription: ProcessorSubscription, profile: UserBillingProfile, derived_tier: Tier
) -> bool:
    """Whether a recorded paid-tier downgrade is still waiting on its schedule."""
    return (
        subscription.schedule_id is not None
        and profile.pending_tier is not None
        and profile.pending_tier.is_paid
        and profile.pending_tier != derived_tier
    )


def profile_update_for_subscription(
    subscription: ProcessorSubscription,
    profile: UserBillingProfile,
    policy: TierPolicy,
) -> Optional[UserBillingProfileUpdate]:
    """Profile state implied by a subscription, or None when it does not concern the profile.

    Pure overwrite of the profile fields the subscription determines, so applying
    it twice gives the same profile. A subscription that is not the tracked one
    only takes over the profile once it is live; an incomplete or unpaid
    subscription mirrors its status without granting its tier.
    """
    tracked = profile.processor_subscription_id
    if tracked and tracked != subscription.id and not subscription.is_live:
        return None

    derived_tier = policy.tier_from_price_id(subscription.price_id)
    interval = policy.interval_from_recurring(subscription.recurring_interval)

    fields: dict = {
        "processor_subscription_id": subscription.id,
        "processor_subscription_status": subscription.status,
    }
    if subscription.customer_id:
        fields["processor_customer_id"] = subscription.customer_id

    if not subscription.is_live:
        return UserBillingProfileUpdate(**fields)

    if profile.awaiting_payment and rank(derived_tier) > rank(profile.tier):
        # Upgrade not paid yet: the invoice.paid event or a confirmation raises the tier.
        if subscription.cancel_at_period_end or subscription.schedule_id:
            return UserBillingProfileUpdate(**fields)
        return UserBillingProfileUpdate.clear_pending(**fields)

    fields["tier"] = derived_tier
    fields["billing_interval"] = interval

    if subscription.cancel_at_period_end:
        return UserBillingProfileUpdate(
            pending_tier=Tier.FREE,
            pending_tier_effective=subscription.current_period_end,
            pending_billing_interval=None,
            **fields,
        )

    if has_unexecuted_schedule(subscription, profile, derived_tier):
        return UserBillingProfileUpdate(**fields)

    return UserBillingProfileUpdate.clear_pending(**fields)


def profile_update_for_deleted_subscription() -> UserBillingProfileUpdate:
    """Profile state after the tracked subscription ended."""
    return UserBillingProfileUpdate.clear_pending(
        tier=Tier.FREE,
        processor_subscription_id=None,
        processor_subscription_status="canceled",
        pending_payment_invoice_id=None,
        pending_payment_tier=None,
    )


def diff_profile(profile: UserBillingProfile, update: UserBillingProfileUpdate) -> dict:
    """Fields of ``update`` whose value differs from ``profile``, as (old, new) pairs."""
    drift = {}
    for name in update.model_fields_set:
        old = getattr(profile, name)
        new = getattr(update, name)
        if old != new:
            drift[name] = (
                old.value if isinstance(old, Enum) else old,
                new.value if isinstance(new, Enum) else new,
            )
    return drift
