"""Unit tests for the billing endpoints.

The app runs with its real middleware and exception handlers; the services are
wired to the in-memory Stripe and Clerk doubles.
"""

import hashlib
import hmac
import json
import time
import uuid

import pytest
from fastapi.testclient import TestClient

from studyhall.api import deps
from studyhall.api.context import ApiContext
from studyhall.core.config import settings
from studyhall.core.logging import logger
from studyhall.integrations.stripe_client import StripeClient
from studyhall.main import app
from studyhall.platform.billing.webhook_handler import BillingWebhookProcessor
from tests.fixtures.fakes import AI_MONTH, LESSONS_MONTH, PERIOD_END


def _context() -> ApiContext:
    request_id = str(uuid.uuid4())
    return ApiContext(
        request_id=request_id,
        user_id="user_1",
        auth_method="clerk",
        logger=logger.with_context(request_id=request_id, user_id="user_1"),
    )


@pytest.fixture
def webhook_processor(repository, policy, test_settings):
    """Webhook processor verifying with the test signing secret."""
    return BillingWebhookProcessor(
        StripeClient(webhook_secret=test_settings.STRIPE_WEBHOOK_SECRET), repository, policy
    )


@pytest.fixture
def client(
    billing_service, preview_service, payment_methods, reconciler, webhook_processor
):
    """Test client for the app signed in as user_1."""
    app.dependency_overrides[deps.get_context] = _context
    app.dependency_overrides[deps.get_billing_service] = lambda: billing_service
    app.dependency_overrides[deps.get_preview_service] = lambda: preview_service
    app.dependency_overrides[deps.get_payment_method_service] = lambda: payment_methods
    app.dependency_overrides[deps.get_reconciler] = lambda: reconciler
    app.dependency_overrides[deps.get_webhook_processor] = lambda: webhook_processor
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestChangeTier:
    """POST /billing/change-tier."""

    def test_downgrade_is_scheduled(self, client, subscribed):
        subscribed(AI_MONTH)

        response = client.post("/billing/change-tier", json={"tier": "lessons"})

        assert response.status_code == 200
        body = response.json()
        assert body["mode"] == "downgrade_scheduled"
        assert body["tier"] == "lessons_ai"
        assert body["effectiveDate"] == PERIOD_END
        assert body["subscriptionId"] == "sub_1"

    def test_upgrade_needing_authentication(self, client, fake_stripe, subscribed):
        subscribed(LESSONS_MONTH)
        fake_stripe.pay_outcome = "requires_action"

        response = client.post("/billing/change-tier/", json={"tier": "lessons_ai"})

        assert response.status_code == 200
        body = response.json()
        assert body["mode"] == "payment_required"
        assert body["clientSecret"].endswith("_secret")
        assert body["amountDue"] == 1000

    def test_paid_tier_without_subscription_conflicts(self, client):
        response = client.post("/billing/change-tier", json={"tier": "lessons"})

        assert response.status_code == 409
        assert response.json()["code"] == "no_active_subscription"

    def test_unknown_tier(self, client):
        response = client.post("/billing/change-tier", json={"tier": "platinum"})

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_tier"

    def test_missing_tier(self, client, fake_stripe):
        response = client.post("/billing/change-tier", json={})

        assert response.status_code == 400
        assert response.json() == {"detail": "Missing tier", "code": "invalid_tier"}
        assert fake_stripe.calls == []

    def test_invalid_interval_is_a_validation_error(self, client):
        response = client.post(
            "/billing/change-tier", json={"tier": "lessons", "interval": "week"}
        )

        assert response.status_code == 422

    def test_foreign_subscription_is_forbidden(self, client, subscribed):
        subscribed(AI_MONTH, owner="user_2")

        response = client.post("/billing/change-tier", json={"tier": "lessons"})

        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"

    def test_unpaid_upgrade_without_secret(self, client, fake_stripe, subscribed):
        subscribed(LESSONS_MONTH)
        fake_stripe.pay_outcome = "no_secret"

        response = client.post("/billing/change-tier", json={"tier": "lessons_ai"})

        assert response.status_code == 402
        assert response.json()["code"] == "payment_required"


class TestOtherEndpoints:
    """Preview, signup, checkout and read endpoints."""

    def test_preview(self, client, subscribed):
        subscribed(LESSONS_MONTH)

        response = client.post("/billing/preview", json={"tier": "lessons_ai"})

        assert response.status_code == 200
        body = response.json()
        assert body["dueNow"] == 500
        assert body["nextAmount"] == 2999
        assert body["action"] == "upgrade"

    def test_cancel_plan_change_with_nothing_pending(self, client, subscribed):
        subscribed(LESSONS_MONTH)

        response = client.post("/billing/cancel-plan-change")

        assert response.status_code == 409
        assert response.json()["code"] == "no_pending_change"

    def test_subscription_intent_accepts_camel_case(self, client):
        response = client.post(
            "/billing/subscription-intent",
            json={"tier": "lessons", "paymentMethodId": "pm_card", "interval": "year"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["subscriptionId"].startswith("sub_")
        assert body["clientSecret"].endswith("_secret")

    def test_checkout_uses_allowed_origin(self, client, fake_stripe, test_settings):
        origin = test_settings.cors_origins[0]

        response = client.post(
            "/billing/checkout", json={"tier": "lessons"}, headers={"Origin": origin}
        )

        assert response.status_code == 200
        assert response.json()["url"].startswith("https://checkout.stripe.test/")
        success_url = fake_stripe.called("create_checkout_session")[0][3]
        assert success_url.startswith(f"{origin}/get-started")

    def test_set_free(self, client, fake_stripe, subscribed):
        subscribed(AI_MONTH)

        response = client.post("/billing/set-free")

        assert response.status_code == 200
        assert response.json() == {"ok": True, "tier": "free"}
        assert fake_stripe.subscriptions["sub_1"].status == "canceled"

    def test_subscription_summary(self, client, subscribed):
        subscribed(AI_MONTH)

        response = client.get("/billing/subscription")

        assert response.status_code == 200
        body = response.json()
        assert body["tier"] == "lessons_ai"
        assert body["billingInterval"] == "month"
        assert body["hasSubscription"] is True
        assert body["paymentMethod"]["hasCustomer"] is True

    def test_payment_method_without_customer(self, client):
        response = client.get("/billing/payment-method")

        assert response.status_code == 200
        assert response.json()["hasPaymentMethod"] is False

    def test_setup_intent_without_customer(self, client):
        response = client.post("/billing/payment-method/setup-intent")

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_request"

    def test_sync_repairs_drift(self, client, fake_stripe, subscribed):
        subscribed(LESSONS_MONTH)
        fake_stripe.add_subscription(AI_MONTH)

        response = client.post("/billing/sync")

        assert response.status_code == 200
        body = response.json()
        assert body["applied"] is True
        assert body["drift"]["tier"] == {"stored": "lessons", "derived": "lessons_ai"}

    def test_profile_store_outage(self, client, fake_clerk):
        fake_clerk.fail_writes = True

        response = client.post("/billing/set-free")

        assert response.status_code == 502
        assert response.json()["code"] == "profile_store_error"

    def test_unexpected_error_is_a_500(self, client, billing_service, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(billing_service, "get_billing_summary", broken)

        response = client.get("/billing/subscription")

        assert response.status_code == 500
        assert response.json()["code"] == "internal_error"


class TestWebhookEndpoint:
    """POST /billing/webhook with real signature verification."""

    def _post(self, client, payload: str, secret: str):
        timestamp = int(time.time())
        digest = hmac.new(
            secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
        ).hexdigest()
        return client.post(
            "/billing/webhook",
            content=payload,
            headers={
                "Stripe-Signature": f"t={timestamp},v1={digest}",
                "Content-Type": "application/json",
            },
        )

    def _payload(self) -> str:
        return json.dumps(
            {
                "id": "evt_1",
                "object": "event",
                "type": "customer.subscription.deleted",
                "data": {
                    "object": {
                        "id": "sub_1",
                        "object": "subscription",
                        "customer": "cus_1",
                        "status": "canceled",
                        "metadata": {"clerkUserId": "user_1"},
                        "items": {"object": "list", "data": []},
                    }
                },
            }
        )

    def test_signed_delivery(self, client, fake_clerk, subscribed, test_settings):
        subscribed(AI_MONTH)

        response = self._post(client, self._payload(), test_settings.STRIPE_WEBHOOK_SECRET)

        assert response.status_code == 200
        assert response.text == "ok"
        assert fake_clerk.bag().get("tier") == "free"

    def test_forged_delivery(self, client, fake_clerk, subscribed):
        subscribed(AI_MONTH)

        response = self._post(client, self._payload(), "whsec_forged")

        assert response.status_code == 400
        assert response.json()["code"] == "webhook_verification_failed"
        assert fake_clerk.reads == 0


class TestAccessControl:
    """Authentication and the billing switch."""

    def test_missing_session_is_unauthorized(self, billing_service, monkeypatch):
        monkeypatch.setattr(settings, "AUTH_ENABLED", True)
        app.dependency_overrides[deps.get_billing_service] = lambda: billing_service
        try:
            response = TestClient(app).get("/billing/subscription")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"

    def test_billing_disabled(self, client, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_ENABLED", False)

        response = client.get("/billing/subscription")

        assert response.status_code == 400
        assert response.json()["detail"] == "Billing is not enabled for this instance"
