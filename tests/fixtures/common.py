"""Common test fixtures."""

import pytest

from studyhall.core.config import Settings
from studyhall.platform.billing.billing_service import BillingService
from studyhall.platform.billing.lease import LocalTransitionLease
from studyhall.platform.billing.payment_methods import PaymentMethodService
from studyhall.platform.billing.plan_logic import PriceCatalog, TierPolicy
from studyhall.platform.billing.preview_service import PreviewService
from studyhall.platform.billing.profile_repository import BillingProfileRepository
from studyhall.platform.billing.reconciliation import ProfileReconciler
from studyhall.schemas.billing import BillingInterval, Tier
from tests.fixtures.fakes import (
    AI_MONTH,
    AI_YEAR,
    LESSONS_MONTH,
    LESSONS_YEAR,
    FakeClerkClient,
    FakeStripeClient,
)

APP_URL = "https://app.studyhall.test"
STAGING_URL = "https://staging.studyhall.test"


@pytest.fixture
def test_settings():
    """Settings with a known app URL and one extra allowed origin."""
    return Settings(
        APP_FULL_URL=APP_URL,
        ADDITIONAL_CORS_ORIGINS=STAGING_URL,
        DEFAULT_CURRENCY="cad",
        STRIPE_WEBHOOK_SECRET="whsec_test_secret",
    )


@pytest.fixture
def catalog():
    """Price catalog with all four paid prices."""
    return PriceCatalog(
        prices={
            (Tier.LESSONS, BillingInterval.MONTH): LESSONS_MONTH,
            (Tier.LESSONS, BillingInterval.YEAR): LESSONS_YEAR,
            (Tier.LESSONS_AI, BillingInterval.MONTH): AI_MONTH,
            (Tier.LESSONS_AI, BillingInterval.YEAR): AI_YEAR,
        }
    )


@pytest.fixture
def policy(catalog):
    """Tier policy over the full catalog."""
    return TierPolicy(catalog)


@pytest.fixture
def fake_stripe():
    """In-memory Stripe."""
    return FakeStripeClient()


@pytest.fixture
def fake_clerk():
    """In-memory Clerk with one user and an empty profile."""
    clerk = FakeClerkClient()
    clerk.add_user("user_1")
    return clerk


@pytest.fixture
def repository(fake_clerk):
    """Profile repository over the in-memory Clerk."""
    return BillingProfileRepository(fake_clerk)


@pytest.fixture
def payment_methods(fake_stripe, repository):
    """Saved card service over the fakes."""
    return PaymentMethodService(fake_stripe, repository)


@pytest.fixture
def billing_service(fake_stripe, repository, policy, test_settings, payment_methods):
    """Transition engine over the fakes."""
    return BillingService(
        stripe=fake_stripe,
        repository=repository,
        policy=policy,
        lease=LocalTransitionLease(),
        settings=test_settings,
        payment_methods=payment_methods,
    )


@pytest.fixture
def preview_service(fake_stripe, repository, policy, test_settings, payment_methods):
    """Preview engine over the fakes."""
    return PreviewService(
        fake_stripe, repository, policy, test_settings, payment_methods=payment_methods
    )


@pytest.fixture
def reconciler(fake_stripe, repository, policy):
    """Reconciliation sweep over the fakes."""
    return ProfileReconciler(fake_stripe, repository, policy, LocalTransitionLease())


@pytest.fixture
def subscribed(fake_stripe, fake_clerk):
    """Put user_1 on a tier with a live monthly subscription.

    Returns a function taking the price id; it seeds Stripe and the profile and
    returns the subscription.
    """

    def _subscribe(price_id: str = LESSONS_MONTH, **subscription_fields):
        subscription = fake_stripe.add_subscription(price_id, **subscription_fields)
        price = fake_stripe.prices[price_id]
        tier = Tier.LESSONS if price_id in (LESSONS_MONTH, LESSONS_YEAR) else Tier.LESSONS_AI
        fake_clerk.add_user(
            "user_1",
            tier=tier,
            billing_interval=BillingInterval(price.recurring_interval),
            processor_customer_id=subscription.customer_id,
            processor_subscription_id=subscription.id,
            processor_subscription_status=subscription.status,
        )
        return subscription

    return _subscribe
