"""Unit tests for saved card management."""

import pytest

from studyhall.core.exceptions import InvalidRequestError, PermissionException
from studyhall.schemas.billing import CardSummary
from studyhall.schemas.processor import PaymentMethod
from tests.fixtures.fakes import LESSONS_MONTH, not_found

MASTERCARD = CardSummary(brand="mastercard", last4="4444", exp_month=1, exp_year=2031)


@pytest.mark.asyncio
class TestGetSummary:
    """Reading the card the next invoice is charged to."""

    async def test_no_customer(self, payment_methods, fake_stripe):
        summary = await payment_methods.get_summary("user_1")

        assert summary.has_customer is False
        assert summary.has_payment_method is False
        assert fake_stripe.calls == []

    async def test_customer_default_card(self, payment_methods, fake_stripe, subscribed):
        subscribed(LESSONS_MONTH)
        fake_stripe.add_payment_method("pm_1", "cus_1")
        await fake_stripe.set_default_payment_method("cus_1", "pm_1")

        summary = await payment_methods.get_summary("user_1")

        assert summary.has_payment_method is True
        assert (summary.brand, summary.last4) == ("visa", "4242")

    async def test_subscription_default_wins(self, payment_methods, fake_stripe, subscribed):
        subscribed(LESSONS_MONTH)
        fake_stripe.add_payment_method("pm_1", "cus_1")
        await fake_stripe.set_default_payment_method("cus_1", "pm_1")
        fake_stripe.payment_methods["pm_sub"] = PaymentMethod(
            id="pm_sub", customer_id="cus_1", card=MASTERCARD
        )
        fake_stripe.subscriptions["sub_1"].default_payment_method_id = "pm_sub"

        summary = await payment_methods.get_summary("user_1")

        assert summary.last4 == "4444"

    async def test_lookup_failure_reads_as_no_card(
        self, payment_methods, fake_stripe, subscribed
    ):
        subscribed(LESSONS_MONTH)
        fake_stripe.failures["get_subscription"] = not_found("subscription", "sub_1")

        summary = await payment_methods.get_summary("user_1")

        assert summary.has_customer is True
        assert summary.has_payment_method is False


@pytest.mark.asyncio
class TestReplaceCard:
    """Collecting and installing a replacement card."""

    async def test_setup_intent_requires_customer(self, payment_methods):
        with pytest.raises(InvalidRequestError):
            await payment_methods.create_setup_intent("user_1")

    async def test_setup_intent(self, payment_methods, fake_stripe, subscribed):
        subscribed(LESSONS_MONTH)

        result = await payment_methods.create_setup_intent("user_1")

        assert result.client_secret == f"{result.setup_intent_id}_secret"
        assert fake_stripe.setup_intents[result.setup_intent_id].customer_id == "cus_1"

    async def test_complete_setup_sets_defaults(self, payment_methods, fake_stripe, subscribed):
        subscribed(LESSONS_MONTH)
        intent = await payment_methods.create_setup_intent("user_1")
        fake_stripe.payment_methods["pm_new"] = PaymentMethod(
            id="pm_new", customer_id="cus_1", card=MASTERCARD
        )
        stored = fake_stripe.setup_intents[intent.setup_intent_id]
        stored.status = "succeeded"
        stored.payment_method_id = "pm_new"

        result = await payment_methods.complete_setup("user_1", intent.setup_intent_id)

        assert result.payment_method.last4 == "4444"
        assert fake_stripe.customers["cus_1"].default_payment_method.id == "pm_new"
        assert fake_stripe.subscriptions["sub_1"].default_payment_method_id == "pm_new"

    async def test_unfinished_setup_is_rejected(self, payment_methods, fake_stripe, subscribed):
        subscribed(LESSONS_MONTH)
        intent = await payment_methods.create_setup_intent("user_1")

        with pytest.raises(InvalidRequestError):
            await payment_methods.complete_setup("user_1", intent.setup_intent_id)
        assert fake_stripe.called("set_default_payment_method") == []

    async def test_setup_intent_of_another_customer(
        self, payment_methods, fake_stripe, subscribed
    ):
        subscribed(LESSONS_MONTH)
        fake_stripe.add_customer("cus_2", owner="user_2")
        foreign = await fake_stripe.create_setup_intent("cus_2")

        with pytest.raises(PermissionException):
            await payment_methods.complete_setup("user_1", foreign.id)
