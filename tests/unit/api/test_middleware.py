"""Unit tests for the billing exception to HTTP status mapping."""

import pytest

from studyhall.api.middleware import status_code_for
from studyhall.core.exceptions import (
    BillingException,
    InvalidTierError,
    MissingPriceConfigurationError,
    NoPendingChangeError,
    PaymentRequiredError,
    ProcessorError,
    ProfileStoreError,
    TransitionInProgressError,
    UnauthorizedException,
    WebhookVerificationError,
)


@pytest.mark.parametrize(
    "exc, status",
    [
        (InvalidTierError(tier="gold"), 400),
        (WebhookVerificationError("bad signature"), 400),
        (UnauthorizedException(), 401),
        (PaymentRequiredError(), 402),
        (NoPendingChangeError(), 409),
        (TransitionInProgressError(), 409),
        (MissingPriceConfigurationError("lessons", "year"), 500),
        (ProfileStoreError(), 502),
        (BillingException("unclassified"), 500),
    ],
)
def test_status_code_for(exc, status):
    """Each billing error answers with its documented status."""
    assert status_code_for(exc) == status


def test_processor_errors_follow_the_processor_status():
    """Rejected requests are the client's fault; processor failures are ours."""
    assert status_code_for(ProcessorError("Your card was declined.", http_status=402)) == 400
    assert status_code_for(ProcessorError("Stripe is down", http_status=503)) == 500
    assert status_code_for(ProcessorError("Connection reset")) == 500
