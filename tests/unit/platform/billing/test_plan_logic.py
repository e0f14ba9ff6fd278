"""Unit tests for the tier policy and the pure billing decision rules."""

from datetime import datetime, timezone

import pytest

from studyhall.core.exceptions import InvalidTierError, MissingPriceConfigurationError
from studyhall.platform.billing.plan_logic import (
    ChangeType,
    PreviewContext,
    PriceCatalog,
    TierPolicy,
    TransitionAction,
    TransitionContext,
    analyze_preview,
    analyze_transition,
    build_downgrade_phases,
    compare_tiers,
    diff_profile,
    estimate_next_payment_at,
    parse_tier,
    profile_update_for_deleted_subscription,
    profile_update_for_subscription,
    split_proration_lines,
)
from studyhall.schemas.billing import (
    BillingInterval,
    PreviewAction,
    Tier,
    UserBillingProfile,
)
from studyhall.schemas.processor import InvoiceLine, ProcessorSubscription
from tests.fixtures.fakes import AI_MONTH, DEFAULT_PRICES, LESSONS_MONTH, LESSONS_YEAR, PERIOD_END


def _subscription(price_id=AI_MONTH, **fields) -> ProcessorSubscription:
    values = dict(
        id="sub_1",
        customer_id="cus_1",
        status="active",
        items=[{"id": "si_1", "price_id": price_id, "price": DEFAULT_PRICES[price_id]}],
        current_period_end=PERIOD_END,
        metadata={"clerkUserId": "user_1"},
    )
    values.update(fields)
    return ProcessorSubscription(**values)


def _profile(**fields) -> UserBillingProfile:
    return UserBillingProfile(user_id="user_1", **fields)


class TestTierOrdering:
    """Tests for tier parsing and comparison."""

    def test_parse_tier_accepts_names_case_insensitively(self):
        assert parse_tier("Lessons_AI") is Tier.LESSONS_AI
        assert parse_tier(" free ") is Tier.FREE
        assert parse_tier(Tier.LESSONS) is Tier.LESSONS

    def test_parse_tier_rejects_unknown_names(self):
        with pytest.raises(InvalidTierError) as exc_info:
            parse_tier("platinum")
        assert exc_info.value.tier == "platinum"

    @pytest.mark.parametrize("value", [None, "", "  "])
    def test_parse_tier_rejects_missing_tier(self, value):
        with pytest.raises(InvalidTierError, match="Missing tier"):
            parse_tier(value)

    @pytest.mark.parametrize(
        "current,desired,expected",
        [
            (Tier.FREE, Tier.LESSONS, ChangeType.UPGRADE),
            (Tier.LESSONS, Tier.LESSONS_AI, ChangeType.UPGRADE),
            (Tier.LESSONS_AI, Tier.LESSONS, ChangeType.DOWNGRADE),
            (Tier.LESSONS, Tier.FREE, ChangeType.DOWNGRADE),
            (Tier.LESSONS, Tier.LESSONS, ChangeType.SAME),
        ],
    )
    def test_compare_tiers(self, current, desired, expected):
        assert compare_tiers(current, desired) == expected


class TestTierPolicy:
    """Tests for the price catalog and the tier policy."""

    def test_price_lookup_both_ways(self, policy):
        assert policy.price_id_for_tier(Tier.LESSONS) == LESSONS_MONTH
        assert policy.price_id_for_tier(Tier.LESSONS, BillingInterval.YEAR) == LESSONS_YEAR
        assert policy.tier_from_price_id(AI_MONTH) is Tier.LESSONS_AI

    def test_free_has_no_price(self, policy):
        assert policy.price_id_for_tier(Tier.FREE) is None

    def test_unknown_price_maps_to_free(self, policy):
        assert policy.tier_from_price_id("price_retired") is Tier.FREE
        assert policy.tier_from_price_id(None) is Tier.FREE
        assert not policy.is_known_price("price_retired")

    def test_missing_price_fails_closed(self):
        policy = TierPolicy(PriceCatalog(prices={(Tier.LESSONS, BillingInterval.MONTH): "p1"}))
        with pytest.raises(MissingPriceConfigurationError):
            policy.require_price_id(Tier.LESSONS_AI, BillingInterval.MONTH)

    def test_catalog_rejects_shared_price_ids(self):
        with pytest.raises(ValueError):
            PriceCatalog(
                prices={
                    (Tier.LESSONS, BillingInterval.MONTH): "price_same",
                    (Tier.LESSONS_AI, BillingInterval.MONTH): "price_same",
                }
            )

    def test_catalog_is_immutable(self, catalog):
        with pytest.raises(TypeError):
            catalog.prices[(Tier.LESSONS, BillingInterval.MONTH)] = "price_other"

    def test_from_settings_skips_unset_prices(self, test_settings):
        test_settings.STRIPE_PRICE_LESSONS_MONTHLY = "price_a"
        test_settings.STRIPE_PRICE_LESSONS_YEARLY = None
        test_settings.STRIPE_PRICE_LESSONS_AI_TUTOR_MONTHLY = "price_b"
        test_settings.STRIPE_PRICE_LESSONS_AI_TUTOR_YEARLY = None

        catalog = PriceCatalog.from_settings(test_settings)

        assert dict(catalog.prices) == {
            (Tier.LESSONS, BillingInterval.MONTH): "price_a",
            (Tier.LESSONS_AI, BillingInterval.MONTH): "price_b",
        }

    def test_interval_from_recurring(self):
        assert TierPolicy.interval_from_recurring("year") is BillingInterval.YEAR
        assert TierPolicy.interval_from_recurring("month") is BillingInterval.MONTH
        assert TierPolicy.interval_from_recurring(None) is BillingInterval.MONTH


class TestAnalyzeTransition:
    """Tests for the transition classification."""

    @pytest.mark.parametrize(
        "current,desired,has_subscription,action",
        [
            (Tier.FREE, Tier.FREE, False, TransitionAction.FREE_IMMEDIATE),
            (Tier.LESSONS, Tier.FREE, False, TransitionAction.FREE_IMMEDIATE),
            (Tier.FREE, Tier.LESSONS, False, TransitionAction.REJECT_NO_SUBSCRIPTION),
            (Tier.LESSONS, Tier.FREE, True, TransitionAction.CANCEL_AT_PERIOD_END),
            (Tier.LESSONS_AI, Tier.LESSONS, True, TransitionAction.SCHEDULE_DOWNGRADE),
            (Tier.LESSONS, Tier.LESSONS_AI, True, TransitionAction.APPLY_IMMEDIATELY),
            (Tier.LESSONS, Tier.LESSONS, True, TransitionAction.APPLY_IMMEDIATELY),
        ],
    )
    def test_actions(self, current, desired, has_subscription, action):
        decision = analyze_transition(
            TransitionContext(
                current_tier=current, desired_tier=desired, has_subscription=has_subscription
            )
        )
        assert decision.action == action

    def test_downgrade_phases_keep_the_current_price_until_period_end(self):
        phases = build_downgrade_phases(
            current_price_id=AI_MONTH,
            next_price_id=LESSONS_MONTH,
            quantity=1,
            phase_start=100,
            period_end=200,
        )

        assert phases == [
            {"items": [{"price": AI_MONTH, "quantity": 1}], "start_date": 100, "end_date": 200},
            {"items": [{"price": LESSONS_MONTH, "quantity": 1}], "start_date": 200},
        ]


class TestAnalyzePreview:
    """Tests for the preview classification."""

    @pytest.mark.parametrize(
        "current,desired,has_subscription,action",
        [
            (Tier.FREE, Tier.FREE, False, PreviewAction.NONE),
            (Tier.LESSONS, Tier.FREE, False, PreviewAction.SWITCH_TO_FREE_IMMEDIATE),
            (Tier.FREE, Tier.LESSONS, False, PreviewAction.SIGNUP),
            (Tier.LESSONS, Tier.FREE, True, PreviewAction.CANCEL_TO_FREE),
            (Tier.LESSONS_AI, Tier.LESSONS, True, PreviewAction.DOWNGRADE),
            (Tier.LESSONS, Tier.LESSONS_AI, True, PreviewAction.UPGRADE),
        ],
    )
    def test_actions(self, current, desired, has_subscription, action):
        decision = analyze_preview(
            PreviewContext(
                current_tier=current, desired_tier=desired, has_subscription=has_subscription
            )
        )
        assert decision.action == action

    def test_split_proration_lines(self):
        lines = [
            InvoiceLine(amount=-999, proration=True),
            InvoiceLine(amount=1499, proration=True),
            InvoiceLine(amount=2999),
        ]
        assert split_proration_lines(lines) == (500, 2999)

    def test_net_credit_is_not_due(self):
        lines = [InvoiceLine(amount=-1500, proration=True), InvoiceLine(amount=1999)]
        assert split_proration_lines(lines) == (0, 1999)

    def test_estimate_next_payment_at_uses_calendar_months(self):
        now = datetime(2024, 1, 31, tzinfo=timezone.utc)
        expected = int(datetime(2024, 2, 29, tzinfo=timezone.utc).timestamp())
        assert estimate_next_payment_at(now, "month") == expected

    def test_estimate_next_payment_at_yearly(self):
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        expected = int(datetime(2025, 3, 1, tzinfo=timezone.utc).timestamp())
        assert estimate_next_payment_at(now, "year") == expected


class TestProfileUpdateForSubscription:
    """Tests for deriving the profile from a subscription."""

    def test_live_subscription_sets_tier_and_clears_pending(self, policy):
        profile = _profile(
            tier=Tier.LESSONS, pending_tier=Tier.FREE, processor_subscription_id="sub_1"
        )

        update = profile_update_for_subscription(_subscription(), profile, policy)
        result = update.apply_to(profile)

        assert result.tier is Tier.LESSONS_AI
        assert result.billing_interval is BillingInterval.MONTH
        assert result.pending_tier is None
        assert result.processor_subscription_status == "active"

    def test_cancel_at_period_end_records_pending_free(self, policy):
        profile = _profile(tier=Tier.LESSONS_AI, processor_subscription_id="sub_1")

        update = profile_update_for_subscription(
            _subscription(cancel_at_period_end=True), profile, policy
        )
        result = update.apply_to(profile)

        assert result.tier is Tier.LESSONS_AI
        assert result.pending_tier is Tier.FREE
        assert result.pending_tier_effective == PERIOD_END

    def test_unexecuted_schedule_keeps_pending_downgrade(self, policy):
        profile = _profile(
            tier=Tier.LESSONS_AI,
            pending_tier=Tier.LESSONS,
            pending_tier_effective=PERIOD_END,
            processor_subscription_id="sub_1",
        )

        update = profile_update_for_subscription(
            _subscription(schedule_id="sub_sched_1"), profile, policy
        )
        result = update.apply_to(profile)

        assert result.tier is Tier.LESSONS_AI
        assert result.pending_tier is Tier.LESSONS
        assert result.pending_tier_effective == PERIOD_END

    def test_executed_schedule_applies_new_tier(self, policy):
        profile = _profile(
            tier=Tier.LESSONS_AI,
            pending_tier=Tier.LESSONS,
            pending_tier_effective=PERIOD_END,
            processor_subscription_id="sub_1",
        )

        update = profile_update_for_subscription(_subscription(LESSONS_MONTH), profile, policy)
        result = update.apply_to(profile)

        assert result.tier is Tier.LESSONS
        assert result.pending_tier is None

    def test_non_entitling_status_does_not_change_tier(self, policy):
        profile = _profile(tier=Tier.LESSONS, processor_subscription_id="sub_1")

        update = profile_update_for_subscription(_subscription(status="unpaid"), profile, policy)

        assert "tier" not in update.model_fields_set
        assert update.processor_subscription_status == "unpaid"

    def test_unpaid_upgrade_keeps_lower_tier(self, policy):
        profile = _profile(
            tier=Tier.LESSONS,
            processor_subscription_id="sub_1",
            pending_payment_invoice_id="in_1",
            pending_payment_tier=Tier.LESSONS_AI,
        )

        update = profile_update_for_subscription(_subscription(), profile, policy)

        assert "tier" not in update.model_fields_set

    def test_unpaid_upgrade_drops_cancellation_no_longer_on_stripe(self, policy):
        profile = _profile(
            tier=Tier.LESSONS,
            pending_tier=Tier.FREE,
            pending_tier_effective=PERIOD_END,
            processor_subscription_id="sub_1",
            pending_payment_invoice_id="in_1",
            pending_payment_tier=Tier.LESSONS_AI,
        )

        result = profile_update_for_subscription(_subscription(), profile, policy).apply_to(
            profile
        )

        assert result.tier is Tier.LESSONS
        assert result.pending_tier is None
        assert result.pending_tier_effective is None
        assert result.pending_payment_invoice_id == "in_1"

    def test_unpaid_upgrade_keeps_pending_cancellation(self, policy):
        profile = _profile(
            tier=Tier.LESSONS,
            pending_tier=Tier.FREE,
            pending_tier_effective=PERIOD_END,
            processor_subscription_id="sub_1",
            pending_payment_invoice_id="in_1",
            pending_payment_tier=Tier.LESSONS_AI,
        )

        update = profile_update_for_subscription(
            _subscription(cancel_at_period_end=True), profile, policy
        )

        assert "pending_tier" not in update.model_fields_set

    def test_other_non_live_subscription_is_ignored(self, policy):
        profile = _profile(tier=Tier.LESSONS, processor_subscription_id="sub_live")

        update = profile_update_for_subscription(
            _subscription(id="sub_abandoned", status="incomplete"), profile, policy
        )

        assert update is None

    def test_applying_twice_is_stable(self, policy):
        profile = _profile(tier=Tier.FREE)
        subscription = _subscription(cancel_at_period_end=True)

        once = profile_update_for_subscription(subscription, profile, policy).apply_to(profile)
        twice = profile_update_for_subscription(subscription, once, policy).apply_to(once)

        assert once == twice

    def test_deleted_subscription_drops_to_free(self):
        profile = _profile(tier=Tier.LESSONS_AI, processor_subscription_id="sub_1")

        result = profile_update_for_deleted_subscription().apply_to(profile)

        assert result.tier is Tier.FREE
        assert result.processor_subscription_id is None
        assert result.processor_subscription_status == "canceled"

    def test_diff_profile_reports_changed_fields_only(self, policy):
        profile = _profile(
            tier=Tier.LESSONS,
            billing_interval=BillingInterval.MONTH,
            processor_customer_id="cus_1",
            processor_subscription_id="sub_1",
            processor_subscription_status="active",
        )

        update = profile_update_for_subscription(_subscription(), profile, policy)

        assert diff_profile(profile, update) == {"tier": ("lessons", "lessons_ai")}
