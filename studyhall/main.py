"""Main module of the FastAPI application.

This module sets up the FastAPI application and the middleware to log incoming requests
and unhandled exceptions.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from studyhall.api.middleware import (
    add_request_id,
    billing_exception_handler,
    exception_logging_middleware,
    log_requests,
    validation_exception_handler,
)
from studyhall.api.router import TrailingSlashRouter
from studyhall.api.v1.api import api_router
from studyhall.core.config import settings
from studyhall.core.exceptions import BillingException
from studyhall.core.logging import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events.

    Checks Redis on startup when it holds the transition leases and closes the
    pool on shutdown.
    """
    uses_redis = settings.TRANSITION_LEASE_BACKEND == "redis"
    if uses_redis:
        from studyhall.core.redis_client import redis_client

        await redis_client.test_connection()

    logger.info(f"Starting {settings.PROJECT_NAME} ({settings.ENVIRONMENT})")
    yield

    if uses_redis:
        await redis_client.close()


# Create FastAPI app with our custom router and disable FastAPI's built-in redirects
app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url="/openapi.json",
    lifespan=lifespan,
    router=TrailingSlashRouter(),
    redirect_slashes=False,  # Critical: disable FastAPI's built-in slash redirects
)

app.include_router(api_router)

# Register middleware directly
app.middleware("http")(add_request_id)
app.middleware("http")(log_requests)
app.middleware("http")(exception_logging_middleware)

# Register exception handlers
app.exception_handler(RequestValidationError)(validation_exception_handler)
app.exception_handler(ValidationError)(validation_exception_handler)
app.exception_handler(BillingException)(billing_exception_handler)

# The web app is always allowed; deployments can add more origins
CORS_ORIGINS = [settings.app_url, *settings.cors_origins]
if settings.ENVIRONMENT == "local" and settings.ADDITIONAL_CORS_ORIGINS:
    CORS_ORIGINS.append("*")  # Allow all origins in local environment

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
