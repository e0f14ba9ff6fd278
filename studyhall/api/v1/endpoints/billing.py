"""API endpoints for billing operations.

This module provides the HTTP interface for billing operations,
delegating all business logic to the billing services.
"""

from typing import Optional

from fastapi import Depends, Header, Request
from fastapi.responses import PlainTextResponse

from studyhall import schemas
from studyhall.api import deps
from studyhall.api.context import ApiContext
from studyhall.api.router import TrailingSlashRouter
from studyhall.core.logging import logger
from studyhall.platform.billing.billing_service import BillingService
from studyhall.platform.billing.payment_methods import PaymentMethodService
from studyhall.platform.billing.preview_service import PreviewService
from studyhall.platform.billing.reconciliation import ProfileReconciler
from studyhall.platform.billing.webhook_handler import BillingWebhookProcessor

router = TrailingSlashRouter()


@router.post("/change-tier", response_model=schemas.TransitionResult)
async def change_tier(
    request: schemas.TierChangeRequest,
    ctx: ApiContext = Depends(deps.get_context),
    service: BillingService = Depends(deps.get_billing_service),
) -> schemas.TransitionResult:
    """Move the signed-in user to another tier.

    Upgrades are charged immediately with proration. Downgrades between paid
    tiers and cancellations take effect at the end of the current period.
    Moving to free without a subscription is immediate.

    Args:
        request: Desired tier and optional billing interval
        ctx: Authentication context
        service: Billing service

    Returns:
        What happened; ``payment_required`` carries the client secret that the
        web client confirms with Stripe.js
    """
    return await service.request_transition(
        ctx.user_id, request.tier, request.interval, log=ctx.logger
    )


@router.post("/preview", response_model=schemas.PreviewResult)
async def preview_change(
    request: schemas.TierChangeRequest,
    ctx: ApiContext = Depends(deps.get_context),
    service: PreviewService = Depends(deps.get_preview_service),
) -> schemas.PreviewResult:
    """Show what a tier change would cost without changing anything.

    Args:
        request: Desired tier and optional billing interval
        ctx: Authentication context
        service: Preview service

    Returns:
        Amount due now, the next payment and the invoice lines
    """
    return await service.preview_transition(
        ctx.user_id, request.tier, request.interval, log=ctx.logger
    )


@router.post("/cancel-plan-change", response_model=schemas.CancelPendingChangeResult)
async def cancel_plan_change(
    ctx: ApiContext = Depends(deps.get_context),
    service: BillingService = Depends(deps.get_billing_service),
) -> schemas.CancelPendingChangeResult:
    """Undo a scheduled downgrade or cancellation."""
    return await service.cancel_pending_change(ctx.user_id, log=ctx.logger)


@router.post("/subscription-intent", response_model=schemas.SubscriptionIntentResult)
async def create_subscription_intent(
    request: schemas.SubscriptionIntentRequest,
    ctx: ApiContext = Depends(deps.get_context),
    service: BillingService = Depends(deps.get_billing_service),
) -> schemas.SubscriptionIntentResult:
    """Start a paid subscription whose first invoice is paid in the browser.

    Args:
        request: Tier, saved payment method and optional interval
        ctx: Authentication context
        service: Billing service

    Returns:
        The incomplete subscription and the client secret of its first payment
    """
    return await service.create_subscription(
        ctx.user_id,
        request.tier,
        request.payment_method_id,
        request.interval,
        log=ctx.logger,
    )


@router.post("/confirm-payment", response_model=schemas.ConfirmPaymentResult)
async def confirm_payment(
    request: schemas.ConfirmPaymentRequest,
    ctx: ApiContext = Depends(deps.get_context),
    service: BillingService = Depends(deps.get_billing_service),
) -> schemas.ConfirmPaymentResult:
    """Grant the tier of a subscription after its payment succeeded."""
    return await service.confirm_payment(
        ctx.user_id, request.subscription_id, request.invoice_id, log=ctx.logger
    )


@router.post("/checkout", response_model=schemas.CheckoutResult)
async def create_checkout_session(
    request: schemas.CheckoutRequest,
    ctx: ApiContext = Depends(deps.get_context),
    service: BillingService = Depends(deps.get_billing_service),
    origin: Optional[str] = Header(None),
) -> schemas.CheckoutResult:
    """Create a hosted Stripe Checkout session.

    The redirect URLs are built from the request origin when it is one of the
    allowed origins, and from the configured app URL otherwise.

    Args:
        request: Tier and optional interval
        ctx: Authentication context
        service: Billing service
        origin: ``Origin`` header of the request

    Returns:
        Checkout URL to redirect the user to
    """
    return await service.start_checkout(
        ctx.user_id, request.tier, request.interval, origin=origin, log=ctx.logger
    )


@router.post("/checkout-complete", response_model=schemas.CheckoutCompleteResult)
async def complete_checkout(
    request: schemas.CheckoutCompleteRequest,
    ctx: ApiContext = Depends(deps.get_context),
    service: BillingService = Depends(deps.get_billing_service),
) -> schemas.CheckoutCompleteResult:
    """Record the subscription of a paid Checkout session on the profile."""
    return await service.complete_checkout(ctx.user_id, request.session_id, log=ctx.logger)


@router.post("/set-free", response_model=schemas.SwitchToFreeResult)
async def set_free(
    ctx: ApiContext = Depends(deps.get_context),
    service: BillingService = Depends(deps.get_billing_service),
) -> schemas.SwitchToFreeResult:
    """Cancel any subscription now and move to the free tier."""
    return await service.switch_to_free_now(ctx.user_id, log=ctx.logger)


@router.get("/subscription", response_model=schemas.BillingSummary)
async def get_subscription(
    ctx: ApiContext = Depends(deps.get_context),
    service: BillingService = Depends(deps.get_billing_service),
) -> schemas.BillingSummary:
    """Get current subscription information.

    Returns the stored tier, the pending change if any and the saved card.

    Args:
        ctx: Authentication context
        service: Billing service

    Returns:
        Subscription information
    """
    return await service.get_billing_summary(ctx.user_id, log=ctx.logger)


@router.get("/payment-method", response_model=schemas.PaymentMethodSummary)
async def get_payment_method(
    ctx: ApiContext = Depends(deps.get_context),
    service: PaymentMethodService = Depends(deps.get_payment_method_service),
) -> schemas.PaymentMethodSummary:
    """Get the card that the next invoice will be charged to."""
    return await service.get_summary(ctx.user_id, log=ctx.logger)


@router.post("/payment-method/setup-intent", response_model=schemas.SetupIntentResult)
async def create_setup_intent(
    ctx: ApiContext = Depends(deps.get_context),
    service: PaymentMethodService = Depends(deps.get_payment_method_service),
) -> schemas.SetupIntentResult:
    """Start saving a replacement card for off-session charges."""
    return await service.create_setup_intent(ctx.user_id, log=ctx.logger)


@router.post("/payment-method/complete", response_model=schemas.SetupCompleteResult)
async def complete_setup(
    request: schemas.SetupCompleteRequest,
    ctx: ApiContext = Depends(deps.get_context),
    service: PaymentMethodService = Depends(deps.get_payment_method_service),
) -> schemas.SetupCompleteResult:
    """Make the card of a confirmed setup intent the default for future invoices."""
    return await service.complete_setup(ctx.user_id, request.setup_intent_id, log=ctx.logger)


@router.post("/sync", response_model=schemas.ReconcileReport)
async def sync_profile(
    ctx: ApiContext = Depends(deps.get_context),
    reconciler: ProfileReconciler = Depends(deps.get_reconciler),
) -> schemas.ReconcileReport:
    """Re-derive the billing profile from the live subscription and repair drift."""
    return await reconciler.resync(ctx.user_id, fix=True, log=ctx.logger)


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    processor: BillingWebhookProcessor = Depends(deps.get_webhook_processor),
) -> PlainTextResponse:
    """Handle Stripe webhook events.

    This endpoint receives and processes Stripe webhook events for:
    - Subscription lifecycle (updated, deleted)
    - Paid upgrade invoices

    Security:
    - Verifies webhook signature against the raw body
    - Idempotent processing

    Args:
        request: Raw HTTP request
        stripe_signature: Stripe signature header
        processor: Webhook processor

    Returns:
        ``ok`` on success; a bad signature answers 400
    """
    payload = await request.body()
    outcome = await processor.handle(payload, stripe_signature)
    logger.with_context(event_id=outcome.event_id, event_type=outcome.event_type).info(
        f"Webhook processed (handled={outcome.handled}, detail={outcome.detail})"
    )
    return PlainTextResponse("ok")
