"""Common test fixtures and configuration for pytest.

Fixtures shared by all unit tests live in tests/fixtures/common.py and are
imported here so that every test module can use them.
"""

# Import all fixtures so they are automatically available for all tests
from tests.fixtures.common import (  # noqa
    billing_service,
    catalog,
    fake_clerk,
    fake_stripe,
    payment_methods,
    policy,
    preview_service,
    reconciler,
    repository,
    subscribed,
    test_settings,
)
