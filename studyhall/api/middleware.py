"""Middleware for the FastAPI application.

This module contains middleware that process requests and responses, and the
handlers that turn billing exceptions into JSON error responses.
"""

import time
import traceback
import uuid
from typing import Union

from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from studyhall.core.config import settings
from studyhall.core.exceptions import (
    BillingException,
    IncompleteProcessorResponseError,
    InvalidRequestError,
    InvalidTierError,
    MissingPriceConfigurationError,
    NoActiveSubscriptionError,
    NoPendingChangeError,
    PaymentRequiredError,
    PermissionException,
    ProcessorError,
    ProfileStoreError,
    SubscriptionConflictError,
    TransitionInProgressError,
    UnauthorizedException,
    WebhookVerificationError,
    unpack_validation_error,
)
from studyhall.core.logging import logger


async def add_request_id(request: Request, call_next: callable) -> Response:
    """Middleware to generate and add a request ID to the request for tracing.

    Args:
    ----
        request (Request): The incoming request.
        call_next (callable): The next middleware in the chain.

    Returns:
    -------
        Response: The response to the incoming request.

    """
    request.state.request_id = str(uuid.uuid4())
    return await call_next(request)


async def log_requests(request: Request, call_next: callable) -> Response:
    """Middleware to log incoming requests.

    Args:
    ----
        request (Request): The incoming request.
        call_next (callable): The next middleware in the chain.

    Returns:
    -------
        Response: The response to the incoming request.

    """
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time
    logger.with_context(request_id=getattr(request.state, "request_id", None)).info(
        f"Handled request {request.method} {request.url.path} in {duration:.2f} seconds. "
        f"Response code: {response.status_code}"
    )
    return response


async def exception_logging_middleware(request: Request, call_next: callable) -> Response:
    """Middleware to log unhandled exceptions.

    Args:
    ----
        request (Request): The incoming request.
        call_next (callable): The next middleware in the chain.

    Returns:
    -------
        Response: The response to the incoming request.

    """
    try:
        return await call_next(request)
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}\n{traceback.format_exc()}")

        response_content = {
            "detail": f"Internal Server Error: {exc.__class__.__name__}: {str(exc)}",
            "code": "internal_error",
        }
        if settings.LOCAL_DEVELOPMENT or settings.DEBUG:
            response_content["trace"] = traceback.format_exc()

        return JSONResponse(status_code=500, content=response_content)


# Exception handlers
async def validation_exception_handler(
    request: Request, exc: Union[RequestValidationError, ValidationError]
) -> JSONResponse:
    """Exception handler for validation errors that occur during request processing.

    Args:
    ----
        request (Request): The incoming request that triggered the exception.
        exc (Union[RequestValidationError, ValidationError]): The exception object that was raised.

    Returns:
    -------
        JSONResponse: A 422 Unprocessable Entity status response that details the validation
            errors. Each error message is a dictionary where the key is the location
            of the validation error in the request, and the value is the associated error message.

    Example of JSON output:
        {
            "errors": [
                {"body.tier": "Field required"},
                {"body.interval": "Input should be 'month' or 'year'"}
            ]
        }

    """
    error_messages = unpack_validation_error(exc)
    logger.warning(f"Validation error on {request.url.path}: {error_messages}")
    return JSONResponse(status_code=422, content=error_messages)


# Map exception types to HTTP status codes
_STATUS_CODES: dict[type, int] = {
    # 400 Bad Request - Client error
    InvalidTierError: 400,
    InvalidRequestError: 400,
    WebhookVerificationError: 400,
    # 401 Unauthorized - No valid session
    UnauthorizedException: 401,
    # 402 Payment Required - Entitlement waits on a payment
    PaymentRequiredError: 402,
    # 403 Forbidden - Billing objects of another user
    PermissionException: 403,
    # 409 Conflict - Request does not fit the current subscription state
    NoActiveSubscriptionError: 409,
    NoPendingChangeError: 409,
    SubscriptionConflictError: 409,
    TransitionInProgressError: 409,
    # 500 Internal Server Error - Configuration and processor failures
    MissingPriceConfigurationError: 500,
    IncompleteProcessorResponseError: 500,
    # 502 Bad Gateway - The profile store failed
    ProfileStoreError: 502,
}


def status_code_for(exc: BillingException) -> int:
    """HTTP status of a billing exception."""
    if isinstance(exc, ProcessorError):
        return 400 if exc.is_client_error else 500
    for exc_type in type(exc).__mro__:
        if exc_type in _STATUS_CODES:
            return _STATUS_CODES[exc_type]
    return 500


async def billing_exception_handler(request: Request, exc: BillingException) -> JSONResponse:
    """Generic exception handler for all BillingException types.

    Args:
    ----
        request (Request): The incoming request that triggered the exception.
        exc (BillingException): The exception object that was raised.

    Returns:
    -------
        JSONResponse: ``{"detail": message, "code": code}`` with the mapped status code.

    """
    status_code = status_code_for(exc)
    log = logger.with_context(
        request_id=getattr(request.state, "request_id", None), error_code=exc.code
    )
    if status_code >= 500:
        log.error(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    else:
        log.info(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})
