"""Dependencies that are used in the API endpoints."""

import uuid
from functools import lru_cache
from typing import Optional

from fastapi import Cookie, Depends, Header, Request

from studyhall.api.auth import get_user_id_from_token
from studyhall.api.context import ApiContext
from studyhall.core.config import settings
from studyhall.core.exceptions import InvalidRequestError, UnauthorizedException
from studyhall.core.logging import ContextualLogger, logger
from studyhall.integrations.clerk_client import get_clerk_client
from studyhall.integrations.stripe_client import get_stripe_client
from studyhall.platform.billing.billing_service import BillingService
from studyhall.platform.billing.lease import TransitionLease, create_transition_lease
from studyhall.platform.billing.payment_methods import PaymentMethodService
from studyhall.platform.billing.plan_logic import PriceCatalog, TierPolicy
from studyhall.platform.billing.preview_service import PreviewService
from studyhall.platform.billing.profile_repository import BillingProfileRepository
from studyhall.platform.billing.reconciliation import ProfileReconciler
from studyhall.platform.billing.webhook_handler import BillingWebhookProcessor


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def get_context(
    request: Request,
    authorization: Optional[str] = Header(None),
    session_cookie: Optional[str] = Cookie(None, alias="__session"),
) -> ApiContext:
    """Create unified API context for the request.

    This is the primary dependency for all billing endpoints, providing:
    - Request tracking (request_id)
    - The signed-in Clerk user, from the bearer token or the ``__session`` cookie
    - Pre-configured contextual logger with all dimensions

    Raises:
    ------
        UnauthorizedException: If no valid session is provided.
    """
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    user_id = await get_user_id_from_token(_bearer_token(authorization) or session_cookie)
    if not user_id:
        raise UnauthorizedException("No valid authentication provided")

    auth_method = "clerk" if settings.AUTH_ENABLED else "disabled"
    base_logger = logger.with_context(
        request_id=request_id,
        user_id=user_id,
        auth_method=auth_method,
        context_base="api",
    )

    return ApiContext(
        request_id=request_id,
        user_id=user_id,
        auth_method=auth_method,
        logger=base_logger,
    )


def require_billing_enabled() -> None:
    """Reject billing calls on instances that run without Stripe."""
    if not settings.STRIPE_ENABLED:
        raise InvalidRequestError("Billing is not enabled for this instance")


async def get_logger(context: ApiContext = Depends(get_context)) -> ContextualLogger:
    """Get a logger with the current authentication context."""
    return context.logger


# Service wiring. Each piece is built once per process.


@lru_cache
def get_tier_policy() -> TierPolicy:
    """Tier policy over the configured price catalog."""
    return TierPolicy(PriceCatalog.from_settings(settings))


@lru_cache
def get_profile_repository() -> BillingProfileRepository:
    """Profile repository over the configured Clerk metadata bag."""
    return BillingProfileRepository(get_clerk_client(), settings.PROFILE_METADATA_BAG)


@lru_cache
def get_transition_lease() -> TransitionLease:
    """Per-user transition lease for the configured backend."""
    return create_transition_lease(
        settings.TRANSITION_LEASE_BACKEND, settings.TRANSITION_LEASE_TTL_SECONDS
    )


@lru_cache
def get_payment_method_service() -> PaymentMethodService:
    """Saved card service."""
    return PaymentMethodService(get_stripe_client(), get_profile_repository())


@lru_cache
def get_billing_service() -> BillingService:
    """Transition engine with its collaborators."""
    return BillingService(
        stripe=get_stripe_client(),
        repository=get_profile_repository(),
        policy=get_tier_policy(),
        lease=get_transition_lease(),
        settings=settings,
        payment_methods=get_payment_method_service(),
    )


@lru_cache
def get_preview_service() -> PreviewService:
    """Preview engine."""
    return PreviewService(
        get_stripe_client(),
        get_profile_repository(),
        get_tier_policy(),
        settings,
        payment_methods=get_payment_method_service(),
    )


@lru_cache
def get_webhook_processor() -> BillingWebhookProcessor:
    """Webhook reconciler."""
    return BillingWebhookProcessor(
        get_stripe_client(), get_profile_repository(), get_tier_policy()
    )


@lru_cache
def get_reconciler() -> ProfileReconciler:
    """Reconciliation sweep."""
    return ProfileReconciler(
        get_stripe_client(), get_profile_repository(), get_tier_policy(), get_transition_lease()
    )
