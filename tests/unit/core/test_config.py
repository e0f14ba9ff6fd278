"""Unit tests for settings parsing."""

import pytest
from pydantic import ValidationError

from studyhall.core.config import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Drop billing variables the host environment may define."""
    for name in (
        "STRIPE_PRICE_LESSONS_MONTHLY",
        "STRIPE_PRICE_LESSONS",
        "LESSONS_PRICE_ID",
        "STRIPE_PRICE_LESSONS_AI_TUTOR_YEARLY",
        "APP_FULL_URL",
        "NEXT_PUBLIC_APP_URL",
        "AUTH_ENABLED",
        "CLERK_JWKS_URL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_legacy_price_variable_names(monkeypatch):
    """Older deployments name the price variables differently."""
    monkeypatch.setenv("LESSONS_PRICE_ID", "price_legacy")
    monkeypatch.setenv("STRIPE_PRICE_LESSONS_AI_TUTOR_YEARLY", " price_ai_year ")

    settings = Settings(_env_file=None)

    assert settings.STRIPE_PRICE_LESSONS_MONTHLY == "price_legacy"
    assert settings.STRIPE_PRICE_LESSONS_AI_TUTOR_YEARLY == "price_ai_year"


def test_first_alias_wins(monkeypatch):
    monkeypatch.setenv("STRIPE_PRICE_LESSONS", "price_second")
    monkeypatch.setenv("STRIPE_PRICE_LESSONS_MONTHLY", "price_first")

    assert Settings(_env_file=None).STRIPE_PRICE_LESSONS_MONTHLY == "price_first"


def test_product_id_is_rejected():
    with pytest.raises(ValidationError, match="price id"):
        Settings(_env_file=None, STRIPE_PRICE_LESSONS_MONTHLY="prod_123")


def test_blank_price_reads_as_unset():
    settings = Settings(_env_file=None, STRIPE_PRICE_LESSONS_MONTHLY="  ")

    assert settings.STRIPE_PRICE_LESSONS_MONTHLY is None


def test_jwks_url_required_with_auth():
    with pytest.raises(ValidationError, match="AUTH_ENABLED"):
        Settings(_env_file=None, AUTH_ENABLED=True)


def test_unknown_lease_backend():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, TRANSITION_LEASE_BACKEND="memcached")


def test_app_url_and_origins():
    settings = Settings(
        _env_file=None,
        NEXT_PUBLIC_APP_URL="https://app.studyhall.test/",
        ADDITIONAL_CORS_ORIGINS="https://a.test; https://b.test,",
    )

    assert settings.app_url == "https://app.studyhall.test"
    assert settings.cors_origins == ["https://a.test", "https://b.test"]


def test_app_url_defaults_per_environment():
    assert Settings(_env_file=None, ENVIRONMENT="local").app_url == "http://localhost:3000"
    assert Settings(_env_file=None, ENVIRONMENT="dev").app_url == "https://app.dev-studyhall.com"
