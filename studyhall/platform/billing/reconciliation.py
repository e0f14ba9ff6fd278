"""Profile reconciliation sweep.

Re-derives billing profiles from live Stripe state with the same rules the
webhook reconciler applies, so a profile left stale by a failed write or a
lost delivery is repaired without waiting for the next event.
"""

from typing import Iterable, Optional

from studyhall.core.exceptions import BillingException, PermissionException, ProcessorError
from studyhall.core.logging import ContextualLogger, logger
from studyhall.integrations.stripe_client import StripeClient
from studyhall.platform.billing.lease import TransitionLease
from studyhall.platform.billing.plan_logic import (
    TierPolicy,
    diff_profile,
    profile_update_for_deleted_subscription,
    profile_update_for_subscription,
)
from studyhall.platform.billing.profile_repository import BillingProfileRepository
from studyhall.schemas.billing import (
    ReconcileReport,
    Tier,
    UserBillingProfile,
    UserBillingProfileUpdate,
)

_ENDED_STATUSES = {"canceled", "incomplete_expired"}


class ProfileReconciler:
    """Compares profiles against Stripe and optionally fixes the drift."""

    def __init__(
        self,
        stripe: StripeClient,
        repository: BillingProfileRepository,
        policy: TierPolicy,
        lease: Optional[TransitionLease] = None,
    ):
        """Initialize with the Stripe client, profile repository and tier policy."""
        self.stripe = stripe
        self.repository = repository
        self.policy = policy
        self.lease = lease or TransitionLease()

    async def _expected_update(
        self, profile: UserBillingProfile, log: ContextualLogger
    ) -> Optional[UserBillingProfileUpdate]:
        subscription_id = profile.processor_subscription_id
        if not subscription_id:
            if profile.tier.is_paid:
                return UserBillingProfileUpdate.clear_pending(tier=Tier.FREE)
            return None

        try:
            subscription = await self.stripe.get_subscription(subscription_id)
        except ProcessorError as e:
            if not e.is_not_found:
                raise
            log.info(f"Tracked subscription {subscription_id} no longer exists")
            return profile_update_for_deleted_subscription()

        owner = subscription.owner_id
        if owner and owner != profile.user_id:
            raise PermissionException(f"Subscription {subscription_id} is tagged with another user")

        if subscription.status in _ENDED_STATUSES:
            return profile_update_for_deleted_subscription()
        return profile_update_for_subscription(subscription, profile, self.policy)

    async def resync(
        self, user_id: str, fix: bool = True, log: Optional[ContextualLogger] = None
    ) -> ReconcileReport:
        """Re-derive one profile from Stripe.

        Args:
        ----
            user_id (str): The user whose profile is checked.
            fix (bool): Write the derived fields back when they drifted.
            log (ContextualLogger, optional): Request-scoped logger.

        Returns:
        -------
            ReconcileReport: The drifted fields as (stored, derived) pairs.

        """
        log = log or logger.with_context(user_id=user_id, operation="reconcile")

        async with self.lease.hold(user_id):
            profile = await self.repository.get_profile(user_id)
            report = ReconcileReport(
                user_id=user_id, subscription_id=profile.processor_subscription_id
            )

            update = await self._expected_update(profile, log)
            if update is None:
                return report

            report.drift = {
                name: {"stored": old, "derived": new}
                for name, (old, new) in diff_profile(profile, update).items()
            }
            if not report.drift:
                return report

            log.warning(f"Profile drifted from Stripe: {sorted(report.drift)}")
            if fix:
                await self.repository.update_profile(user_id, update, current=profile, log=log)
                report.applied = True
                log.info("Profile repaired from Stripe state")
            return report

    async def resync_many(
        self, user_ids: Iterable[str], fix: bool = False
    ) -> list[ReconcileReport]:
        """Run the sweep over a batch of users, one at a time.

        A failure for one user is recorded on its report and the sweep goes on.
        """
        reports = []
        for user_id in user_ids:
            log = logger.with_context(user_id=user_id, operation="reconcile")
            try:
                reports.append(await self.resync(user_id, fix=fix, log=log))
            except BillingException as e:
                log.error(f"Reconciliation failed: {e.message}")
                reports.append(ReconcileReport(user_id=user_id, error=e.message))
        checked = len(reports)
        drifted = sum(1 for report in reports if report.drift)
        logger.info(f"Reconciliation sweep checked {checked} profiles, {drifted} drifted")
        return reports
