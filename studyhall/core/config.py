"""Configuration settings for the StudyHall billing backend.

Wraps environment variables and provides defaults.
"""

from typing import Optional

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

METADATA_BAGS = ("unsafe_metadata", "public_metadata", "private_metadata")
LEASE_BACKENDS = ("none", "local", "redis")


class Settings(BaseSettings):
    """Pydantic settings class.

    Attributes:
    ----------
        PROJECT_NAME (str): The name of the project.
        LOCAL_DEVELOPMENT (bool): Whether the application is running locally.
        ENVIRONMENT (str): The deployment environment (local, dev, test, prod).
        DEBUG (bool): Whether debug mode is enabled.
        LOG_LEVEL (str): The logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        AUTH_ENABLED (bool): Whether Clerk session tokens are verified.
        DEV_USER_ID (str): The user id every request runs as when auth is disabled.
        CLERK_SECRET_KEY (Optional[str]): Clerk backend API secret key.
        CLERK_API_URL (str): Clerk backend API base URL.
        CLERK_JWKS_URL (Optional[str]): JWKS endpoint used to verify session tokens.
        CLERK_ISSUER (Optional[str]): Expected `iss` claim of session tokens.
        CLERK_AUTHORIZED_PARTIES (Optional[str]): Accepted `azp` claims, comma separated.
        PROFILE_METADATA_BAG (str): Clerk metadata bag holding the billing profile.
        STRIPE_ENABLED (bool): Whether the Stripe integration is enabled.
        STRIPE_SECRET_KEY (Optional[str]): Stripe secret API key.
        STRIPE_WEBHOOK_SECRET (Optional[str]): Stripe webhook signing secret.
        STRIPE_PRICE_LESSONS_MONTHLY (Optional[str]): Monthly price of the lessons tier.
        STRIPE_PRICE_LESSONS_YEARLY (Optional[str]): Yearly price of the lessons tier.
        STRIPE_PRICE_LESSONS_AI_TUTOR_MONTHLY (Optional[str]): Monthly price of lessons + AI.
        STRIPE_PRICE_LESSONS_AI_TUTOR_YEARLY (Optional[str]): Yearly price of lessons + AI.
        DEFAULT_CURRENCY (str): Currency reported when the processor does not say.
        APP_FULL_URL (Optional[str]): Public URL of the web app (checkout redirects).
        TRANSITION_LEASE_BACKEND (str): Per-user transition lease (none, local, redis).
        TRANSITION_LEASE_TTL_SECONDS (int): Expiry of a redis transition lease.
        REDIS_HOST (str): The Redis server hostname.
        REDIS_PORT (int): The Redis server port.
        REDIS_PASSWORD (Optional[str]): The Redis password (if authentication is enabled).
        REDIS_DB (int): The Redis database number.
        ADDITIONAL_CORS_ORIGINS (Optional[str]): Additional CORS origins separated by commas.

    Each price field accepts several historical environment variable names. The
    first one that is set wins, in the order listed in its alias choices.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    PROJECT_NAME: str = "StudyHall"
    LOCAL_DEVELOPMENT: bool = False
    ENVIRONMENT: str = "local"

    # Debug configuration
    DEBUG: bool = False

    # Logging configuration
    LOG_LEVEL: str = "INFO"

    AUTH_ENABLED: bool = False
    DEV_USER_ID: str = "user_local_dev"
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_API_URL: str = "https://api.clerk.com"
    CLERK_JWKS_URL: Optional[str] = Field(None, validate_default=True)
    CLERK_ISSUER: Optional[str] = None
    CLERK_AUTHORIZED_PARTIES: Optional[str] = None
    PROFILE_METADATA_BAG: str = "unsafe_metadata"

    STRIPE_ENABLED: bool = True
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    STRIPE_PRICE_LESSONS_MONTHLY: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "STRIPE_PRICE_LESSONS_MONTHLY",
            "STRIPE_PRICE_LESSONS",
            "STRIPE_LESSONS_PRICE_ID",
            "LESSONS_PRICE_ID",
        ),
    )
    STRIPE_PRICE_LESSONS_YEARLY: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "STRIPE_PRICE_LESSONS_YEARLY",
            "STRIPE_PRICE_LESSONS_ANNUAL",
            "STRIPE_PRICE_LESSONS_YEAR",
            "STRIPE_LESSONS_PRICE_ID_YEARLY",
            "LESSONS_PRICE_ID_YEARLY",
        ),
    )
    STRIPE_PRICE_LESSONS_AI_TUTOR_MONTHLY: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "STRIPE_PRICE_LESSONS_AI_TUTOR_MONTHLY",
            "STRIPE_PRICE_LESSONS_AI_TUTOR",
            "STRIPE_PRICE_LESSONS_AI",
            "STRIPE_LESSONS_AI_TUTOR_PRICE_ID",
            "LESSONS_AI_TUTOR_PRICE_ID",
            "STRIPE_LESSONS_AI_PRICE_ID",
            "LESSONS_AI_PRICE_ID",
        ),
    )
    STRIPE_PRICE_LESSONS_AI_TUTOR_YEARLY: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "STRIPE_PRICE_LESSONS_AI_TUTOR_YEARLY",
            "STRIPE_PRICE_LESSONS_AI_TUTOR_ANNUAL",
            "STRIPE_PRICE_LESSONS_AI_TUTOR_YEAR",
            "STRIPE_LESSONS_AI_TUTOR_PRICE_ID_YEARLY",
            "LESSONS_AI_TUTOR_PRICE_ID_YEARLY",
            "STRIPE_LESSONS_AI_PRICE_ID_YEARLY",
            "LESSONS_AI_PRICE_ID_YEARLY",
        ),
    )

    DEFAULT_CURRENCY: str = "cad"

    APP_FULL_URL: Optional[str] = Field(
        None, validation_alias=AliasChoices("APP_FULL_URL", "NEXT_PUBLIC_APP_URL")
    )

    TRANSITION_LEASE_BACKEND: str = "local"
    TRANSITION_LEASE_TTL_SECONDS: int = 30

    # Redis configuration
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DB: int = 0

    ADDITIONAL_CORS_ORIGINS: Optional[str] = None  # Separated by commas or semicolons

    @field_validator(
        "STRIPE_PRICE_LESSONS_MONTHLY",
        "STRIPE_PRICE_LESSONS_YEARLY",
        "STRIPE_PRICE_LESSONS_AI_TUTOR_MONTHLY",
        "STRIPE_PRICE_LESSONS_AI_TUTOR_YEARLY",
        mode="before",
    )
    def validate_price_id(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        """Reject values that are not Stripe price ids.

        A product id (``prod_...``) pasted where a price id belongs is the usual
        mistake; subscriptions created with it fail much later and far from here.

        Args:
        ----
            v (Optional[str]): The configured value.
            info (ValidationInfo): The validation context.

        Returns:
        -------
            Optional[str]: The trimmed price id, or None when unset.

        Raises:
        ------
            ValueError: If the value is set but does not look like a price id.
        """
        if v is None:
            return None
        v = str(v).strip()
        if not v:
            return None
        if not v.startswith("price_"):
            raise ValueError(f"{info.field_name} must be a Stripe price id (price_...), got {v!r}")
        return v

    @field_validator("PROFILE_METADATA_BAG")
    def validate_metadata_bag(cls, v: str) -> str:
        """Validate the Clerk metadata bag name."""
        if v not in METADATA_BAGS:
            raise ValueError(f"PROFILE_METADATA_BAG must be one of {', '.join(METADATA_BAGS)}")
        return v

    @field_validator("TRANSITION_LEASE_BACKEND")
    def validate_lease_backend(cls, v: str) -> str:
        """Validate the transition lease backend name."""
        v = v.lower()
        if v not in LEASE_BACKENDS:
            raise ValueError(f"TRANSITION_LEASE_BACKEND must be one of {', '.join(LEASE_BACKENDS)}")
        return v

    @field_validator("CLERK_JWKS_URL", mode="before")
    def validate_clerk_settings(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        """Validate Clerk settings when AUTH_ENABLED is True.

        Args:
        ----
            v (str): The value of the Clerk setting.
            info (ValidationInfo): The validation context containing all field values.

        Returns:
        -------
            str: The validated Clerk setting.

        Raises:
        ------
            ValueError: If AUTH_ENABLED is True and the Clerk setting is empty.
        """
        auth_enabled = info.data.get("AUTH_ENABLED", False)
        if auth_enabled and not v:
            raise ValueError(f"{info.field_name} must be set when AUTH_ENABLED is True")
        return v

    @property
    def app_url(self) -> str:
        """The app URL.

        Returns:
            str: The app URL.
        """
        if self.APP_FULL_URL:
            return self.APP_FULL_URL.rstrip("/")

        if self.ENVIRONMENT == "local":
            return "http://localhost:3000"
        return f"https://app.{self.ENVIRONMENT}-studyhall.com"

    @property
    def cors_origins(self) -> list[str]:
        """Additional CORS origins, split on commas or semicolons."""
        if not self.ADDITIONAL_CORS_ORIGINS:
            return []
        raw = self.ADDITIONAL_CORS_ORIGINS.replace(";", ",")
        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @property
    def authorized_parties(self) -> list[str]:
        """Accepted `azp` claims for Clerk session tokens."""
        if not self.CLERK_AUTHORIZED_PARTIES:
            return []
        return [p.strip() for p in self.CLERK_AUTHORIZED_PARTIES.split(",") if p.strip()]


settings = Settings()
