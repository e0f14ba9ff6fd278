"""Stripe API client for billing operations.

This module provides a clean interface to Stripe API, handling all direct
Stripe interactions without business logic. Every call returns the typed models
from ``studyhall.schemas.processor`` and every Stripe failure is raised as
``ProcessorError`` carrying Stripe's own message.
"""

from typing import Any, Dict, List, Optional

import stripe

from studyhall.core.config import settings
from studyhall.core.exceptions import ProcessorError, WebhookVerificationError
from studyhall.core.logging import logger
from studyhall.schemas.billing import CardSummary
from studyhall.schemas.processor import (
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

# API versions before 2025-03-31 expose invoice.payment_intent; later ones expose
# invoice.confirmation_secret and move period bounds onto subscription items.
_LEGACY_INVOICE_SHAPE = str(getattr(stripe, "api_version", "") or "") < "2025-03-31"
_INVOICE_SECRET_EXPAND = "payment_intent" if _LEGACY_INVOICE_SHAPE else "confirmation_secret"

_NOTHING_TO_INVOICE_CODES = {
    "invoice_no_subscription_line_items",
    "invoice_no_customer_line_items",
}
_REQUIRES_ACTION_CODES = {
    "invoice_payment_intent_requires_action",
    "authentication_required",
}


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject, dict or None."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        value = getattr(obj, key, default)
    return default if value is None else value


def _id_of(value: Any) -> Optional[str]:
    """Id of an expandable field, whether it was expanded or not."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _get(value, "id")


def _metadata(obj: Any) -> Dict[str, str]:
    raw = _get(obj, "metadata") or {}
    try:
        return {str(k): str(v) for k, v in dict(raw).items()}
    except (TypeError, ValueError):
        return {}


def _list_data(obj: Any, key: str) -> List[Any]:
    container = _get(obj, key)
    if container is None:
        return []
    data = _get(container, "data")
    if data is not None:
        return list(data)
    if isinstance(container, list):
        return container
    return []


def _to_price(raw: Any) -> Optional[ProcessorPrice]:
    if raw is None or isinstance(raw, str):
        return None
    recurring = _get(raw, "recurring")
    return ProcessorPrice(
        id=_get(raw, "id"),
        unit_amount=_get(raw, "unit_amount", 0),
        currency=_get(raw, "currency"),
        recurring_interval=_get(recurring, "interval"),
        recurring_interval_count=_get(recurring, "interval_count", 1),
    )


def _to_payment_intent(raw: Any) -> Optional[PaymentIntent]:
    if raw is None or isinstance(raw, str):
        return None
    return PaymentIntent(
        id=_get(raw, "id"),
        status=_get(raw, "status"),
        client_secret=_get(raw, "client_secret"),
    )


def _line_is_proration(raw: Any) -> bool:
    if _get(raw, "proration") is not None:
        return bool(_get(raw, "proration"))
    parent = _get(raw, "parent")
    for details_key in ("subscription_item_details", "invoice_item_details"):
        details = _get(parent, details_key)
        if details is not None and _get(details, "proration") is not None:
            return bool(_get(details, "proration"))
    return False


def _to_invoice(raw: Any) -> ProcessorInvoice:
    currency = _get(raw, "currency")
    lines = [
        InvoiceLine(
            description=_get(line, "description"),
            amount=_get(line, "amount", 0),
            currency=_get(line, "currency", currency),
            proration=_line_is_proration(line),
            period_start=_get(_get(line, "period"), "start"),
            period_end=_get(_get(line, "period"), "end"),
        )
        for line in _list_data(raw, "lines")
    ]
    subscription_id = _id_of(_get(raw, "subscription"))
    if subscription_id is None:
        parent = _get(raw, "parent")
        subscription_id = _id_of(_get(_get(parent, "subscription_details"), "subscription"))
    return ProcessorInvoice(
        id=_get(raw, "id"),
        status=_get(raw, "status"),
        amount_due=_get(raw, "amount_due", 0),
        currency=currency,
        customer_id=_id_of(_get(raw, "customer")),
        subscription_id=subscription_id,
        payment_intent=_to_payment_intent(_get(raw, "payment_intent")),
        confirmation_secret=_get(_get(raw, "confirmation_secret"), "client_secret"),
        lines=lines,
        metadata=_metadata(raw),
    )


def _to_subscription(raw: Any) -> ProcessorSubscription:
    items = []
    for item in _list_data(raw, "items"):
        price = _to_price(_get(item, "price"))
        items.append(
            SubscriptionItem(
                id=_get(item, "id"),
                price_id=price.id if price else _id_of(_get(item, "price")),
                quantity=_get(item, "quantity", 1),
                price=price,
            )
        )

    first_item = _list_data(raw, "items")[0] if items else None
    period_start = _get(raw, "current_period_start", _get(first_item, "current_period_start"))
    period_end = _get(raw, "current_period_end", _get(first_item, "current_period_end"))

    latest_invoice = _get(raw, "latest_invoice")
    return ProcessorSubscription(
        id=_get(raw, "id"),
        customer_id=_id_of(_get(raw, "customer")),
        status=_get(raw, "status"),
        items=items,
        cancel_at_period_end=bool(_get(raw, "cancel_at_period_end", False)),
        current_period_start=period_start,
        current_period_end=period_end,
        currency=_get(raw, "currency"),
        metadata=_metadata(raw),
        schedule_id=_id_of(_get(raw, "schedule")),
        latest_invoice_id=_id_of(latest_invoice),
        default_payment_method_id=_id_of(_get(raw, "default_payment_method")),
        latest_invoice=(
            _to_invoice(latest_invoice)
            if latest_invoice is not None and not isinstance(latest_invoice, str)
            else None
        ),
    )


def _to_schedule(raw: Any) -> ProcessorSchedule:
    phases = []
    for phase in _get(raw, "phases") or []:
        phases.append(
            SchedulePhase(
                start_date=_get(phase, "start_date"),
                end_date=_get(phase, "end_date"),
                items=[
                    SchedulePhaseItem(
                        price_id=_id_of(_get(item, "price")),
                        quantity=_get(item, "quantity", 1),
                    )
                    for item in _get(phase, "items") or []
                ],
            )
        )
    return ProcessorSchedule(
        id=_get(raw, "id"),
        status=_get(raw, "status"),
        subscription_id=_id_of(_get(raw, "subscription")),
        phases=phases,
    )


def _to_card(raw: Any) -> Optional[CardSummary]:
    card = _get(raw, "card")
    if card is None:
        return None
    return CardSummary(
        brand=_get(card, "brand"),
        last4=_get(card, "last4"),
        exp_month=_get(card, "exp_month"),
        exp_year=_get(card, "exp_year"),
    )


def _to_payment_method(raw: Any) -> Optional[PaymentMethod]:
    if raw is None or isinstance(raw, str):
        return None
    return PaymentMethod(
        id=_get(raw, "id"),
        customer_id=_id_of(_get(raw, "customer")),
        card=_to_card(raw),
    )


def _to_customer(raw: Any) -> ProcessorCustomer:
    invoice_settings = _get(raw, "invoice_settings")
    return ProcessorCustomer(
        id=_get(raw, "id"),
        email=_get(raw, "email"),
        deleted=bool(_get(raw, "deleted", False)),
        default_payment_method=_to_payment_method(
            _get(invoice_settings, "default_payment_method")
        ),
        metadata=_metadata(raw),
    )


def _to_setup_intent(raw: Any) -> SetupIntent:
    return SetupIntent(
        id=_get(raw, "id"),
        customer_id=_id_of(_get(raw, "customer")),
        status=_get(raw, "status"),
        client_secret=_get(raw, "client_secret"),
        payment_method_id=_id_of(_get(raw, "payment_method")),
        metadata=_metadata(raw),
    )


def _to_checkout_session(raw: Any) -> CheckoutSession:
    return CheckoutSession(
        id=_get(raw, "id"),
        url=_get(raw, "url"),
        status=_get(raw, "status"),
        payment_status=_get(raw, "payment_status"),
        client_reference_id=_get(raw, "client_reference_id"),
        customer_id=_id_of(_get(raw, "customer")),
        subscription_id=_id_of(_get(raw, "subscription")),
        metadata=_metadata(raw),
    )


def _processor_error(action: str, e: stripe.StripeError) -> ProcessorError:
    message = e.user_message or str(e) or f"Failed to {action}"
    logger.warning(f"Stripe call failed ({action}): {message}")
    return ProcessorError(
        message=message,
        http_status=e.http_status,
        processor_code=e.code,
    )


class StripeClient:
    """Client for Stripe API operations."""

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """Initialize Stripe client."""
        if not settings.STRIPE_ENABLED:
            raise ValueError("Stripe is not enabled in settings")

        api_key = api_key or settings.STRIPE_SECRET_KEY
        if api_key:
            stripe.api_key = api_key
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

    def _sanitize_text(self, text: Optional[str]) -> Optional[str]:
        """Sanitize text for Stripe API (ASCII-only)."""
        if not text:
            return text
        return text.encode("ascii", "replace").decode("ascii")

    def _clean_metadata(self, metadata: Optional[Dict[str, str]]) -> Dict[str, str]:
        """Clean metadata values for Stripe."""
        if not metadata:
            return {}

        return {
            self._sanitize_text(str(key)): self._sanitize_text(str(value))
            for key, value in metadata.items()
        }

    # Customer operations

    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProcessorCustomer:
        """Create a Stripe customer."""
        params: Dict[str, Any] = {"metadata": self._clean_metadata(metadata)}
        if email:
            params["email"] = self._sanitize_text(email)
        if name:
            params["name"] = self._sanitize_text(name)
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            return _to_customer(await stripe.Customer.create_async(**params))
        except stripe.StripeError as e:
            raise _processor_error("create customer", e) from e

    async def get_customer(self, customer_id: str) -> ProcessorCustomer:
        """Retrieve a customer with its default payment method expanded."""
        try:
            raw = await stripe.Customer.retrieve_async(
                customer_id, expand=["invoice_settings.default_payment_method"]
            )
            return _to_customer(raw)
        except stripe.StripeError as e:
            raise _processor_error("retrieve customer", e) from e

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        """Make a payment method the customer's default for invoices."""
        try:
            await stripe.Customer.modify_async(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            )
        except stripe.StripeError as e:
            raise _processor_error("set default payment method", e) from e

    # Payment method operations

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        """Attach a payment method to a customer.

        A payment method that is already attached to this customer is not an error.
        """
        try:
            await stripe.PaymentMethod.attach_async(payment_method_id, customer=customer_id)
        except stripe.InvalidRequestError as e:
            message = (e.user_message or str(e)).lower()
            if "already" in message and "attached" in message and "different" not in message:
                logger.info(f"Payment method {payment_method_id} already attached to {customer_id}")
                return
            raise _processor_error("attach payment method", e) from e
        except stripe.StripeError as e:
            raise _processor_error("attach payment method", e) from e

    async def get_payment_method(self, payment_method_id: str) -> PaymentMethod:
        """Retrieve a payment method."""
        try:
            return _to_payment_method(await stripe.PaymentMethod.retrieve_async(payment_method_id))
        except stripe.StripeError as e:
            raise _processor_error("retrieve payment method", e) from e

    # Price operations

    async def get_price(self, price_id: str) -> ProcessorPrice:
        """Retrieve a price."""
        try:
            return _to_price(await stripe.Price.retrieve_async(price_id))
        except stripe.StripeError as e:
            raise _processor_error("retrieve price", e) from e

    # Subscription operations

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Optional[Dict[str, str]] = None,
        default_payment_method: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProcessorSubscription:
        """Create a subscription that stays incomplete until its first payment is confirmed."""
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "metadata": self._clean_metadata(metadata),
            "expand": [f"latest_invoice.{_INVOICE_SECRET_EXPAND}"],
        }
        if default_payment_method:
            params["default_payment_method"] = default_payment_method
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            return _to_subscription(await stripe.Subscription.create_async(**params))
        except stripe.StripeError as e:
            raise _processor_error("create subscription", e) from e

    async def get_subscription(self, subscription_id: str) -> ProcessorSubscription:
        """Retrieve a subscription with item prices and schedule."""
        try:
            raw = await stripe.Subscription.retrieve_async(
                subscription_id, expand=["items.data.price", "schedule"]
            )
            return _to_subscription(raw)
        except stripe.StripeError as e:
            raise _processor_error("retrieve subscription", e) from e

    async def update_subscription(
        self, subscription_id: str, **params: Any
    ) -> ProcessorSubscription:
        """Update a subscription with raw Stripe parameters."""
        try:
            raw = await stripe.Subscription.modify_async(
                subscription_id, expand=["items.data.price", "schedule"], **params
            )
            return _to_subscription(raw)
        except stripe.StripeError as e:
            raise _processor_error("update subscription", e) from e

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel: bool
    ) -> ProcessorSubscription:
        """Set or clear the cancel-at-period-end flag."""
        return await self.update_subscription(subscription_id, cancel_at_period_end=cancel)

    async def swap_subscription_price(
        self,
        subscription_id: str,
        item_id: str,
        price_id: str,
        billing_cycle_anchor: str = "unchanged",
    ) -> ProcessorSubscription:
        """Swap the price of a subscription item now, creating prorations."""
        params: Dict[str, Any] = {
            "cancel_at_period_end": False,
            "items": [{"id": item_id, "price": price_id}],
            "proration_behavior": "create_prorations",
            "payment_behavior": "default_incomplete",
        }
        # Stripe only accepts "now" or "unchanged" here; "unchanged" is its default
        if billing_cycle_anchor == "now":
            params["billing_cycle_anchor"] = "now"
        return await self.update_subscription(subscription_id, **params)

    async def cancel_subscription(self, subscription_id: str) -> ProcessorSubscription:
        """Cancel a subscription immediately."""
        try:
            return _to_subscription(await stripe.Subscription.cancel_async(subscription_id))
        except stripe.StripeError as e:
            raise _processor_error("cancel subscription", e) from e

    # Subscription schedule operations

    async def create_schedule_from_subscription(self, subscription_id: str) -> ProcessorSchedule:
        """Create a schedule that takes over an existing subscription."""
        try:
            raw = await stripe.SubscriptionSchedule.create_async(from_subscription=subscription_id)
            return _to_schedule(raw)
        except stripe.StripeError as e:
            raise _processor_error("create subscription schedule", e) from e

    async def get_schedule(self, schedule_id: str) -> ProcessorSchedule:
        """Retrieve a subscription schedule."""
        try:
            return _to_schedule(await stripe.SubscriptionSchedule.retrieve_async(schedule_id))
        except stripe.StripeError as e:
            raise _processor_error("retrieve subscription schedule", e) from e

    async def update_schedule_phases(
        self, schedule_id: str, phases: List[Dict[str, Any]]
    ) -> ProcessorSchedule:
        """Replace the phases of a schedule; the subscription is released after the last."""
        try:
            raw = await stripe.SubscriptionSchedule.modify_async(
                schedule_id, end_behavior="release", phases=phases
            )
            return _to_schedule(raw)
        except stripe.StripeError as e:
            raise _processor_error("update subscription schedule", e) from e

    async def release_schedule(self, schedule_id: str) -> None:
        """Release a schedule, leaving the subscription on its current price."""
        try:
            await stripe.SubscriptionSchedule.release_async(
                schedule_id, preserve_cancel_date=False
            )
        except stripe.StripeError as e:
            raise _processor_error("release subscription schedule", e) from e

    # Invoice operations

    async def create_invoice(
        self,
        customer_id: str,
        subscription_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Optional[ProcessorInvoice]:
        """Invoice the pending prorations of a subscription now.

        Returns None when Stripe reports there is nothing to invoice.
        """
        try:
            raw = await stripe.Invoice.create_async(
                customer=customer_id,
                subscription=subscription_id,
                auto_advance=False,
                metadata=self._clean_metadata(metadata),
            )
            return _to_invoice(raw)
        except stripe.InvalidRequestError as e:
            if e.code in _NOTHING_TO_INVOICE_CODES or "nothing to invoice" in str(e).lower():
                logger.info(f"Nothing to invoice for subscription {subscription_id}")
                return None
            raise _processor_error("create invoice", e) from e
        except stripe.StripeError as e:
            raise _processor_error("create invoice", e) from e

    async def finalize_invoice(self, invoice_id: str) -> ProcessorInvoice:
        """Finalize a draft invoice so it can be paid."""
        try:
            raw = await stripe.Invoice.finalize_invoice_async(
                invoice_id, auto_advance=False, expand=[_INVOICE_SECRET_EXPAND]
            )
            return _to_invoice(raw)
        except stripe.StripeError as e:
            raise _processor_error("finalize invoice", e) from e

    async def get_invoice(self, invoice_id: str) -> ProcessorInvoice:
        """Retrieve an invoice with its payment secret."""
        try:
            raw = await stripe.Invoice.retrieve_async(invoice_id, expand=[_INVOICE_SECRET_EXPAND])
            return _to_invoice(raw)
        except stripe.StripeError as e:
            raise _processor_error("retrieve invoice", e) from e

    async def pay_invoice(self, invoice_id: str) -> ProcessorInvoice:
        """Pay an open invoice with the customer's default payment method.

        When the payment needs customer action (3-D Secure), the invoice is
        returned unpaid with its confirmation secret instead of raising.
        """
        try:
            raw = await stripe.Invoice.pay_async(invoice_id, expand=[_INVOICE_SECRET_EXPAND])
            return _to_invoice(raw)
        except stripe.StripeError as e:
            if e.code in _REQUIRES_ACTION_CODES:
                logger.info(f"Invoice {invoice_id} payment requires customer action")
                return await self.get_invoice(invoice_id)
            raise _processor_error("pay invoice", e) from e

    async def preview_price_change(
        self,
        customer_id: str,
        subscription_id: str,
        item_id: str,
        price_id: str,
    ) -> ProcessorInvoice:
        """Dry-run invoice for swapping a subscription item's price now."""
        try:
            raw = await stripe.Invoice.create_preview_async(
                customer=customer_id,
                subscription=subscription_id,
                subscription_details={
                    "items": [{"id": item_id, "price": price_id}],
                    "proration_behavior": "create_prorations",
                    "billing_cycle_anchor": "unchanged",
                },
            )
            return _to_invoice(raw)
        except stripe.StripeError as e:
            raise _processor_error("preview invoice", e) from e

    # Setup intent operations

    async def create_setup_intent(
        self,
        customer_id: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> SetupIntent:
        """Create a setup intent for saving a card for off-session use."""
        params: Dict[str, Any] = {
            "customer": customer_id,
            "usage": "off_session",
            "payment_method_types": ["card"],
            "metadata": self._clean_metadata(metadata),
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            return _to_setup_intent(await stripe.SetupIntent.create_async(**params))
        except stripe.StripeError as e:
            raise _processor_error("create setup intent", e) from e

    async def get_setup_intent(self, setup_intent_id: str) -> SetupIntent:
        """Retrieve a setup intent."""
        try:
            return _to_setup_intent(await stripe.SetupIntent.retrieve_async(setup_intent_id))
        except stripe.StripeError as e:
            raise _processor_error("retrieve setup intent", e) from e

    # Checkout operations

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a hosted checkout session in subscription mode."""
        clean_metadata = self._clean_metadata(metadata)
        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": self._sanitize_text(success_url),
            "cancel_url": self._sanitize_text(cancel_url),
            "client_reference_id": client_reference_id,
            "metadata": clean_metadata,
            "subscription_data": {"metadata": clean_metadata},
            "allow_promotion_codes": True,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            return _to_checkout_session(await stripe.checkout.Session.create_async(**params))
        except stripe.StripeError as e:
            raise _processor_error("create checkout session", e) from e

    async def get_checkout_session(self, session_id: str) -> CheckoutSession:
        """Retrieve a checkout session."""
        try:
            return _to_checkout_session(await stripe.checkout.Session.retrieve_async(session_id))
        except stripe.StripeError as e:
            raise _processor_error("retrieve checkout session", e) from e

    # Webhook operations

    def construct_event(self, payload: bytes, signature: Optional[str]) -> stripe.Event:
        """Verify a webhook delivery and parse it into an event."""
        if not self.webhook_secret or not signature:
            raise WebhookVerificationError("Webhook not configured")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}") from e

    @staticmethod
    def subscription_from_event(obj: Any) -> ProcessorSubscription:
        """Typed subscription from a webhook event's data object."""
        return _to_subscription(obj)

    @staticmethod
    def invoice_from_event(obj: Any) -> ProcessorInvoice:
        """Typed invoice from a webhook event's data object."""
        return _to_invoice(obj)


_stripe_client: Optional[StripeClient] = None


def get_stripe_client() -> StripeClient:
    """Process-wide Stripe client, created on first use."""
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeClient()
    return _stripe_client
