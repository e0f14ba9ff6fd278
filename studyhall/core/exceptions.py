"""Shared exceptions module."""

from typing import Optional

from pydantic import ValidationError


class BillingException(Exception):
    """Base exception for StudyHall billing services.

    Every subclass carries a stable machine-readable ``code`` that is returned
    to clients next to the human-readable message.
    """

    code = "billing_error"

    def __init__(self, message: Optional[str] = "Billing operation failed"):
        """Create a new BillingException instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        self.message = message
        super().__init__(self.message)


class UnauthorizedException(BillingException):
    """Exception raised when a request carries no valid session."""

    code = "unauthorized"

    def __init__(self, message: Optional[str] = "Unauthorized"):
        """Create a new UnauthorizedException instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        super().__init__(message)


class PermissionException(BillingException):
    """Exception raised when a user acts on billing objects they do not own."""

    code = "forbidden"

    def __init__(
        self,
        message: Optional[str] = "User does not have the right to perform this action",
    ):
        """Create a new PermissionException instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        super().__init__(message)


class InvalidTierError(BillingException):
    """Exception raised when a requested tier is not one of the known tiers."""

    code = "invalid_tier"

    def __init__(self, tier: Optional[str] = None, message: Optional[str] = None):
        """Create a new InvalidTierError instance.

        Args:
        ----
            tier (str, optional): The rejected tier value.
            message (str, optional): Custom error message. If not provided, generates one.

        """
        self.tier = tier
        if message is None:
            message = f"Invalid tier: {tier!r}" if tier is not None else "Invalid tier"
        super().__init__(message)


class InvalidRequestError(BillingException):
    """Exception raised when a request is well-formed but cannot be honoured."""

    code = "invalid_request"


class NoActiveSubscriptionError(BillingException):
    """Raised when a paid change is requested without a subscription to change."""

    code = "no_active_subscription"

    def __init__(self, message: Optional[str] = "No active subscription"):
        """Create a new NoActiveSubscriptionError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        super().__init__(message)


class NoPendingChangeError(BillingException):
    """Raised when there is no scheduled change to cancel."""

    code = "no_pending_change"

    def __init__(self, message: Optional[str] = "No pending plan change to cancel"):
        """Create a new NoPendingChangeError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        super().__init__(message)


class SubscriptionConflictError(BillingException):
    """Raised when a new subscription is requested while a live one exists."""

    code = "subscription_conflict"


class TransitionInProgressError(BillingException):
    """Raised when another billing change for the same user holds the lease."""

    code = "transition_in_progress"

    def __init__(
        self,
        message: Optional[str] = "Another billing change is in progress for this user",
    ):
        """Create a new TransitionInProgressError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        super().__init__(message)


class PaymentRequiredError(BillingException):
    """Raised when an entitlement is requested before its payment was collected."""

    code = "payment_required"

    def __init__(
        self,
        payment_status: Optional[str] = None,
        message: Optional[str] = None,
    ):
        """Create a new PaymentRequiredError instance.

        Args:
        ----
            payment_status (str, optional): The processor status that blocked the action.
            message (str, optional): Custom error message. If not provided, generates one.

        """
        if message is None:
            if payment_status:
                message = f"Payment not completed (status: {payment_status})"
            else:
                message = "Payment not completed"
        self.payment_status = payment_status
        super().__init__(message)


class MissingPriceConfigurationError(BillingException):
    """Raised when no processor price is configured for a paid tier and interval."""

    code = "missing_price_configuration"

    def __init__(self, tier: str, interval: str):
        """Create a new MissingPriceConfigurationError instance.

        Args:
        ----
            tier (str): The paid tier that has no price.
            interval (str): The billing interval that has no price.

        """
        self.tier = tier
        self.interval = interval
        super().__init__(f"Missing price configuration for {tier} ({interval})")


class IncompleteProcessorResponseError(BillingException):
    """Raised when the processor returns an object without a field we rely on."""

    code = "incomplete_processor_response"


class ProcessorError(BillingException):
    """Exception raised when the payment processor rejects or fails a call.

    ``message`` is the processor's own message, which is safe to show users
    (card declined, invalid price, ...). ``http_status`` is the status the
    processor answered with, when it answered at all.
    """

    code = "processor_error"

    def __init__(
        self,
        message: Optional[str] = "Payment processor request failed",
        http_status: Optional[int] = None,
        processor_code: Optional[str] = None,
        service_name: str = "Stripe",
    ):
        """Create a new ProcessorError instance.

        Args:
        ----
            message (str, optional): The processor's error message.
            http_status (int, optional): HTTP status returned by the processor.
            processor_code (str, optional): The processor's error code (e.g. ``card_declined``).
            service_name (str): The name of the processor.

        """
        self.http_status = http_status
        self.processor_code = processor_code
        self.service_name = service_name
        super().__init__(message)

    @property
    def is_client_error(self) -> bool:
        """Whether the processor rejected the request rather than failing on it."""
        return self.http_status is not None and 400 <= self.http_status < 500

    @property
    def is_not_found(self) -> bool:
        """Whether the processor reported the object as missing."""
        return self.http_status == 404 or self.processor_code == "resource_missing"


class ProfileStoreError(BillingException):
    """Exception raised when the identity provider's metadata store fails."""

    code = "profile_store_error"

    def __init__(
        self,
        message: Optional[str] = "Profile store request failed",
        status_code: Optional[int] = None,
    ):
        """Create a new ProfileStoreError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.
            status_code (int, optional): HTTP status returned by the identity provider.

        """
        self.status_code = status_code
        super().__init__(message)


class WebhookVerificationError(BillingException):
    """Raised when a webhook delivery cannot be authenticated or parsed."""

    code = "webhook_verification_failed"


def unpack_validation_error(exc: ValidationError) -> dict:
    """Unpack a Pydantic validation error into a dictionary.

    Args:
    ----
        exc (ValidationError): The Pydantic validation error.

    Returns:
    -------
        dict: The dictionary representation of the validation error.

    """
    error_messages = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        error_messages.append({field: error["msg"]})

    return {"errors": error_messages}
