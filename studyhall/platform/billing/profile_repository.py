"""Billing profile data access.

Reads and writes ``UserBillingProfile`` in the identity provider's metadata
bag. Updates are merged server-side, so keys unrelated to billing survive.
"""

from typing import Optional

from studyhall.core.logging import ContextualLogger, logger
from studyhall.integrations.clerk_client import ClerkClient
from studyhall.schemas.billing import UserBillingProfile, UserBillingProfileUpdate
from studyhall.schemas.identity import IdentityUser


class BillingProfileRepository:
    """Repository for per-user billing profiles."""

    def __init__(self, clerk: ClerkClient, bag: str = "unsafe_metadata"):
        """Initialize with a Clerk client and the metadata bag holding the profile."""
        self.clerk = clerk
        self.bag = bag

    async def get_user(self, user_id: str) -> IdentityUser:
        """Fetch the identity user behind a profile."""
        return await self.clerk.get_user(user_id)

    async def get_profile(self, user_id: str) -> UserBillingProfile:
        """Read the billing profile of a user; a user never billed reads as free."""
        user = await self.clerk.get_user(user_id)
        return UserBillingProfile.from_metadata(user_id, user.metadata_bag(self.bag))

    async def update_profile(
        self,
        user_id: str,
        update: UserBillingProfileUpdate,
        current: Optional[UserBillingProfile] = None,
        log: Optional[ContextualLogger] = None,
    ) -> UserBillingProfile:
        """Apply a partial update and return the resulting profile.

        The customer id is write-once: an update that would replace a different
        existing customer id drops that field.
        """
        log = log or logger.with_context(user_id=user_id)

        if "processor_customer_id" in update.model_fields_set:
            if current is None:
                current = await self.get_profile(user_id)
            existing = current.processor_customer_id
            if existing and update.processor_customer_id != existing:
                log.error(
                    f"Refusing to replace customer id {existing} with "
                    f"{update.processor_customer_id}"
                )
                fields = {
                    name: getattr(update, name)
                    for name in update.model_fields_set
                    if name != "processor_customer_id"
                }
                update = UserBillingProfileUpdate(**fields)

        patch = update.to_metadata_patch()
        if not patch:
            return current or await self.get_profile(user_id)

        user = await self.clerk.merge_metadata(user_id, self.bag, patch)
        return UserBillingProfile.from_metadata(user_id, user.metadata_bag(self.bag))
