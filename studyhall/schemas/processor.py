"""Typed views of payment processor objects.

The Stripe client converts raw API objects into these models so the billing
services never touch ``stripe.StripeObject`` directly.
"""

from typing import Optional

from pydantic import BaseModel, Field

from studyhall.schemas.billing import CardSummary

# Metadata key tagging processor objects with the identity-provider user they belong to.
OWNER_METADATA_KEY = "clerkUserId"
TIER_METADATA_KEY = "tier"

# Subscription statuses that grant the tier of the subscribed price.
ENTITLING_STATUSES = frozenset({"active", "trialing", "past_due"})


class ProcessorPrice(BaseModel):
    """A recurring price."""

    id: str
    unit_amount: int = 0
    currency: Optional[str] = None
    recurring_interval: Optional[str] = None
    recurring_interval_count: int = 1


class SubscriptionItem(BaseModel):
    """A priced line of a subscription."""

    id: str
    price_id: Optional[str] = None
    quantity: int = 1
    price: Optional[ProcessorPrice] = None


class PaymentIntent(BaseModel):
    """The payment attempt behind an invoice."""

    id: str
    status: Optional[str] = None
    client_secret: Optional[str] = None


class InvoiceLine(BaseModel):
    """One line of an invoice or invoice preview."""

    description: Optional[str] = None
    amount: int = 0
    currency: Optional[str] = None
    proration: bool = False
    period_start: Optional[int] = None
    period_end: Optional[int] = None


class ProcessorInvoice(BaseModel):
    """An invoice or a dry-run invoice preview."""

    id: Optional[str] = None
    status: Optional[str] = None
    amount_due: int = 0
    currency: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_intent: Optional[PaymentIntent] = None
    confirmation_secret: Optional[str] = None
    lines: list[InvoiceLine] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def client_secret(self) -> Optional[str]:
        """Secret the client confirms the payment with, whichever API shape supplied it."""
        if self.confirmation_secret:
            return self.confirmation_secret
        if self.payment_intent:
            return self.payment_intent.client_secret
        return None

    @property
    def payment_succeeded(self) -> bool:
        """Whether the invoice has been paid in full."""
        if self.status == "paid":
            return True
        return self.payment_intent is not None and self.payment_intent.status == "succeeded"


class SchedulePhaseItem(BaseModel):
    """Price and quantity of a schedule phase."""

    price_id: str
    quantity: int = 1


class SchedulePhase(BaseModel):
    """One phase of a subscription schedule."""

    start_date: Optional[int] = None
    end_date: Optional[int] = None
    items: list[SchedulePhaseItem] = Field(default_factory=list)


class ProcessorSchedule(BaseModel):
    """A subscription schedule, used to defer price changes to a period boundary."""

    id: str
    status: Optional[str] = None
    subscription_id: Optional[str] = None
    phases: list[SchedulePhase] = Field(default_factory=list)

    @property
    def is_reusable(self) -> bool:
        """Whether the schedule can still be rewritten."""
        return self.status in {"active", "not_started"}


class ProcessorSubscription(BaseModel):
    """A recurring subscription."""

    id: str
    customer_id: Optional[str] = None
    status: Optional[str] = None
    items: list[SubscriptionItem] = Field(default_factory=list)
    cancel_at_period_end: bool = False
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    currency: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    schedule_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None
    latest_invoice_id: Optional[str] = None
    latest_invoice: Optional[ProcessorInvoice] = None

    @property
    def primary_item(self) -> Optional[SubscriptionItem]:
        """The single priced item billing subscriptions carry."""
        return self.items[0] if self.items else None

    @property
    def price_id(self) -> Optional[str]:
        """Price of the primary item."""
        item = self.primary_item
        return item.price_id if item else None

    @property
    def owner_id(self) -> Optional[str]:
        """Identity-provider user the subscription was created for, if tagged."""
        return self.metadata.get(OWNER_METADATA_KEY) or None

    @property
    def recurring_interval(self) -> Optional[str]:
        """Recurring interval of the primary item's price."""
        item = self.primary_item
        if item and item.price:
            return item.price.recurring_interval
        return None

    @property
    def is_live(self) -> bool:
        """Whether the subscription still bills or grants access."""
        return self.status in ENTITLING_STATUSES


class PaymentMethod(BaseModel):
    """A saved payment method."""

    id: str
    customer_id: Optional[str] = None
    card: Optional[CardSummary] = None


class ProcessorCustomer(BaseModel):
    """A processor customer."""

    id: str
    email: Optional[str] = None
    deleted: bool = False
    default_payment_method: Optional[PaymentMethod] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class SetupIntent(BaseModel):
    """A setup intent used to save a card without charging it."""

    id: str
    customer_id: Optional[str] = None
    status: Optional[str] = None
    client_secret: Optional[str] = None
    payment_method_id: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutSession(BaseModel):
    """A hosted checkout session."""

    id: str
    url: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    client_reference_id: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
