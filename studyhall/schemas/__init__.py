# flake8: noqa: F401
"""Schemas for the application."""

from .billing import (
    BillingInterval,
    BillingSummary,
    CancelPendingChangeResult,
    CardSummary,
    CheckoutCompleteRequest,
    CheckoutCompleteResult,
    CheckoutRequest,
    CheckoutResult,
    ConfirmPaymentRequest,
    ConfirmPaymentResult,
    PaymentMethodSummary,
    PreviewAction,
    PreviewLine,
    PreviewResult,
    ReconcileReport,
    SetupCompleteRequest,
    SetupCompleteResult,
    SetupIntentResult,
    SubscriptionIntentRequest,
    SubscriptionIntentResult,
    SwitchToFreeResult,
    Tier,
    TierChangeRequest,
    TransitionMode,
    TransitionResult,
    UserBillingProfile,
    UserBillingProfileUpdate,
)
from .identity import IdentityUser
from .processor import (
    ENTITLING_STATUSES,
    OWNER_METADATA_KEY,
    TIER_METADATA_KEY,
    CheckoutSession,
    InvoiceLine,
    PaymentIntent,
    PaymentMethod,
    ProcessorCustomer,
    ProcessorInvoice,
    ProcessorPrice,
    ProcessorSchedule,
    ProcessorSubscription,
    SchedulePhase,
    SchedulePhaseItem,
    SetupIntent,
    SubscriptionItem,
)
