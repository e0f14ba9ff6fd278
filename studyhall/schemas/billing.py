"""Billing schemas.

The billing profile lives in a Clerk metadata bag that the web client reads
directly, so its keys stay camelCase. Request and response bodies use the same
convention.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Tier(str, Enum):
    """Subscription tiers, ordered free < lessons < lessons_ai."""

    FREE = "free"
    LESSONS = "lessons"
    LESSONS_AI = "lessons_ai"

    @property
    def is_paid(self) -> bool:
        """Whether the tier is backed by a processor subscription."""
        return self is not Tier.FREE

    @property
    def display_name(self) -> str:
        """Name shown on invoices and preview lines."""
        return _TIER_DISPLAY_NAMES[self]


_TIER_DISPLAY_NAMES = {
    Tier.FREE: "Free",
    Tier.LESSONS: "Lessons",
    Tier.LESSONS_AI: "Lessons + AI Tutor",
}


class BillingInterval(str, Enum):
    """Billing cadence of a paid tier."""

    MONTH = "month"
    YEAR = "year"


class TransitionMode(str, Enum):
    """Outcome of a tier change request."""

    FREE_IMMEDIATE = "free_immediate"
    DOWNGRADE_SCHEDULED = "downgrade_scheduled"
    UPGRADED = "upgraded"
    PAYMENT_REQUIRED = "payment_required"


class PreviewAction(str, Enum):
    """What confirming a previewed tier change would do."""

    NONE = "none"
    SIGNUP = "signup"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CANCEL_TO_FREE = "cancel_to_free"
    SWITCH_TO_FREE_IMMEDIATE = "switch_to_free_immediate"


def _lenient_enum(enum_cls, value: Any):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        return None


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------

PROFILE_FIELD_KEYS = {
    "tier": "tier",
    "pending_tier": "pendingTier",
    "pending_tier_effective": "pendingTierEffective",
    "billing_interval": "billingInterval",
    "pending_billing_interval": "pendingBillingInterval",
    "processor_customer_id": "stripeCustomerId",
    "processor_subscription_id": "stripeSubscriptionId",
    "processor_subscription_status": "stripeSubscriptionStatus",
    "pending_payment_invoice_id": "pendingPaymentInvoiceId",
    "pending_payment_tier": "pendingPaymentTier",
}


class UserBillingProfile(BaseModel):
    """Billing state of one user, as stored in the identity provider's metadata.

    Values written by older clients are read leniently: an unknown tier reads as
    free and unknown optional enum values read as absent.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., exclude=True)
    tier: Tier = Field(Tier.FREE, alias="tier")
    pending_tier: Optional[Tier] = Field(None, alias="pendingTier")
    pending_tier_effective: Optional[int] = Field(None, alias="pendingTierEffective")
    billing_interval: Optional[BillingInterval] = Field(None, alias="billingInterval")
    pending_billing_interval: Optional[BillingInterval] = Field(
        None, alias="pendingBillingInterval"
    )
    processor_customer_id: Optional[str] = Field(None, alias="stripeCustomerId")
    processor_subscription_id: Optional[str] = Field(None, alias="stripeSubscriptionId")
    processor_subscription_status: Optional[str] = Field(None, alias="stripeSubscriptionStatus")
    pending_payment_invoice_id: Optional[str] = Field(None, alias="pendingPaymentInvoiceId")
    pending_payment_tier: Optional[Tier] = Field(None, alias="pendingPaymentTier")

    @field_validator("tier", mode="before")
    @classmethod
    def _read_tier(cls, v: Any) -> Tier:
        return _lenient_enum(Tier, v) or Tier.FREE

    @field_validator("pending_tier", "pending_payment_tier", mode="before")
    @classmethod
    def _read_optional_tier(cls, v: Any) -> Optional[Tier]:
        return _lenient_enum(Tier, v)

    @field_validator("billing_interval", "pending_billing_interval", mode="before")
    @classmethod
    def _read_interval(cls, v: Any) -> Optional[BillingInterval]:
        return _lenient_enum(BillingInterval, v)

    @field_validator("pending_tier_effective", mode="before")
    @classmethod
    def _read_epoch(cls, v: Any) -> Optional[int]:
        if v is None or v == "":
            return None
        try:
            return int(float(v))
        except (TypeError, ValueError):
            return None

    @field_validator(
        "processor_customer_id",
        "processor_subscription_id",
        "processor_subscription_status",
        "pending_payment_invoice_id",
        mode="before",
    )
    @classmethod
    def _read_optional_str(cls, v: Any) -> Optional[str]:
        if v is None or v == "":
            return None
        return str(v)

    @classmethod
    def from_metadata(cls, user_id: str, metadata: Optional[dict]) -> "UserBillingProfile":
        """Build a profile from a raw metadata bag, ignoring unrelated keys."""
        metadata = metadata or {}
        values = {key: metadata.get(key) for key in PROFILE_FIELD_KEYS.values() if key in metadata}
        return cls(user_id=user_id, **values)

    @property
    def has_pending_change(self) -> bool:
        """Whether a scheduled tier change is recorded."""
        return self.pending_tier is not None

    @property
    def awaiting_payment(self) -> bool:
        """Whether an upgrade is waiting for its invoice to be paid."""
        return self.pending_payment_invoice_id is not None


class UserBillingProfileUpdate(BaseModel):
    """Partial profile update.

    Only fields that were explicitly set are written. A field set to None
    removes the key from the metadata bag.
    """

    tier: Optional[Tier] = None
    pending_tier: Optional[Tier] = None
    pending_tier_effective: Optional[int] = None
    billing_interval: Optional[BillingInterval] = None
    pending_billing_interval: Optional[BillingInterval] = None
    processor_customer_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    processor_subscription_status: Optional[str] = None
    pending_payment_invoice_id: Optional[str] = None
    pending_payment_tier: Optional[Tier] = None

    @classmethod
    def clear_pending(cls, **fields: Any) -> "UserBillingProfileUpdate":
        """Build an update that also clears every pending-change field."""
        return cls(
            pending_tier=None,
            pending_tier_effective=None,
            pending_billing_interval=None,
            **fields,
        )

    def to_metadata_patch(self) -> dict[str, Any]:
        """Return the set fields keyed by metadata key, None meaning delete."""
        patch: dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            patch[PROFILE_FIELD_KEYS[name]] = value
        return patch

    def apply_to(self, profile: UserBillingProfile) -> UserBillingProfile:
        """Return a copy of ``profile`` with this update applied."""
        changes = {name: getattr(self, name) for name in self.model_fields_set}
        return profile.model_copy(update=changes)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TierChangeRequest(CamelModel):
    """Body of tier change and preview requests.

    The tier stays a plain string so that unknown or missing values are
    answered with an ``invalid_tier`` error instead of a generic validation failure.
    """

    tier: Optional[str] = None
    interval: Optional[BillingInterval] = None


class SubscriptionIntentRequest(CamelModel):
    """Start a paid subscription with a card collected on the client."""

    tier: Optional[str] = None
    payment_method_id: str
    interval: Optional[BillingInterval] = None


class ConfirmPaymentRequest(CamelModel):
    """Confirm that a payment collected on the client went through."""

    subscription_id: str
    invoice_id: Optional[str] = None


class CheckoutRequest(CamelModel):
    """Start a hosted checkout for a paid tier."""

    tier: Optional[str] = None
    interval: Optional[BillingInterval] = None


class CheckoutCompleteRequest(CamelModel):
    """Finish a hosted checkout after the redirect back to the app."""

    session_id: str


class SetupCompleteRequest(CamelModel):
    """Finish replacing the saved card."""

    setup_intent_id: str


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class CardSummary(CamelModel):
    """Display summary of a saved card."""

    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None


class TransitionResult(CamelModel):
    """Result of a tier change request."""

    mode: TransitionMode
    tier: Tier
    effective_date: Optional[int] = None
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    client_secret: Optional[str] = None
    amount_due: Optional[int] = None
    currency: Optional[str] = None


class CancelPendingChangeResult(CamelModel):
    """Result of canceling a scheduled change."""

    ok: bool = True
    tier: Tier
    interval: BillingInterval


class PreviewLine(CamelModel):
    """One line of a previewed charge."""

    description: str
    amount: int
    currency: str
    proration: bool = False
    period_start: Optional[int] = None
    period_end: Optional[int] = None


class PreviewResult(CamelModel):
    """What a tier change would cost and when it would take effect."""

    current_tier: Tier
    desired_tier: Tier
    has_customer: bool
    has_payment_method: bool
    payment_method: Optional[CardSummary] = None
    currency: str
    due_now: int = 0
    next_amount: int = 0
    next_payment_at: Optional[int] = None
    effective_at: Optional[int] = None
    lines: list[PreviewLine] = Field(default_factory=list)
    action: PreviewAction = PreviewAction.NONE
    requires_payment_method: bool = False


class SubscriptionIntentResult(CamelModel):
    """Client secret the web client confirms the first payment with."""

    subscription_id: str
    client_secret: str


class ConfirmPaymentResult(CamelModel):
    """Result of a payment confirmation."""

    ok: bool = True
    tier: Tier
    subscription_id: str


class CheckoutResult(CamelModel):
    """Hosted checkout URL."""

    url: str
    session_id: str


class CheckoutCompleteResult(CamelModel):
    """Result of a completed hosted checkout."""

    ok: bool = True
    tier: Tier
    subscription_id: Optional[str] = None


class SwitchToFreeResult(CamelModel):
    """Result of an immediate switch to the free tier."""

    ok: bool = True
    tier: Tier = Tier.FREE


class PaymentMethodSummary(CamelModel):
    """Saved card of a user, if any."""

    has_customer: bool
    has_payment_method: bool
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None

    @classmethod
    def from_card(cls, has_customer: bool, card: Optional[CardSummary]) -> "PaymentMethodSummary":
        """Flatten an optional card summary."""
        if card is None:
            return cls(has_customer=has_customer, has_payment_method=False)
        return cls(has_customer=has_customer, has_payment_method=True, **card.model_dump())


class SetupIntentResult(CamelModel):
    """Setup intent the web client collects a replacement card with."""

    setup_intent_id: str
    client_secret: str


class SetupCompleteResult(CamelModel):
    """Result of replacing the saved card."""

    ok: bool = True
    payment_method: Optional[CardSummary] = None


class BillingSummary(CamelModel):
    """Billing state shown on the subscription page."""

    tier: Tier
    billing_interval: Optional[BillingInterval] = None
    pending_tier: Optional[Tier] = None
    pending_tier_effective: Optional[int] = None
    pending_billing_interval: Optional[BillingInterval] = None
    subscription_status: Optional[str] = None
    has_subscription: bool = False
    awaiting_payment: bool = False
    payment_method: PaymentMethodSummary


class ReconcileReport(CamelModel):
    """Drift found (and possibly fixed) between a profile and the processor."""

    user_id: str
    subscription_id: Optional[str] = None
    drift: dict[str, Any] = Field(default_factory=dict)
    applied: bool = False
    error: Optional[str] = None

    @property
    def in_sync(self) -> bool:
        """Whether the profile already matched the processor."""
        return not self.drift and self.error is None
