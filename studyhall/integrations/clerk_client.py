"""Clerk backend API client for user lookup and metadata updates."""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from studyhall.core.config import settings
from studyhall.core.exceptions import ProfileStoreError
from studyhall.core.logging import logger
from studyhall.schemas.identity import IdentityUser


class ClerkRateLimitError(Exception):
    """Custom exception for Clerk rate limit errors."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        """Initialize Clerk rate limit error.

        Args:
            message: Error message
            retry_after: Number of seconds to wait before retrying
        """
        super().__init__(message)
        self.retry_after = retry_after


class ClerkClient:
    """Client for the Clerk backend API."""

    DEFAULT_TIMEOUT = 10.0
    MAX_RETRY_AFTER = 10  # seconds

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the Clerk client.

        Args:
            secret_key: Clerk secret key, defaults to CLERK_SECRET_KEY
            base_url: Clerk API base URL, defaults to CLERK_API_URL
            transport: Optional httpx transport (tests use a mock transport)
        """
        self.secret_key = secret_key or settings.CLERK_SECRET_KEY
        self.base_url = (base_url or settings.CLERK_API_URL).rstrip("/")
        self._transport = transport

    def _get_retry_after(self, response: httpx.Response) -> Optional[int]:
        """Extract retry-after header value from response."""
        retry_after = response.headers.get("retry-after")
        if retry_after:
            try:
                return int(retry_after)
            except ValueError:
                logger.warning(f"Invalid retry-after header value: {retry_after}")
        return None

    @retry(
        retry=retry_if_exception_type((ClerkRateLimitError, httpx.TransportError)),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated request to the Clerk backend API.

        Rate limits and transport failures are retried; any other non-2xx
        answer raises ProfileStoreError.
        """
        if not self.secret_key:
            raise ProfileStoreError("CLERK_SECRET_KEY is not configured")

        headers = {"Authorization": f"Bearer {self.secret_key}"}
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                json=json_data,
                timeout=self.DEFAULT_TIMEOUT,
            )

        if response.status_code == 429:
            retry_after = self._get_retry_after(response)
            error_msg = f"Clerk API rate limit exceeded for {method} {endpoint}"
            if retry_after:
                logger.warning(f"{error_msg}. Retry after {retry_after} seconds.")
                await asyncio.sleep(min(retry_after, self.MAX_RETRY_AFTER))
            raise ClerkRateLimitError(error_msg, retry_after)

        if response.is_error:
            logger.error(
                f"Clerk API request failed for {method} {endpoint}: "
                f"{response.status_code} {response.text[:200]}"
            )
            raise ProfileStoreError(
                f"Clerk API returned {response.status_code} for {method} {endpoint}",
                status_code=response.status_code,
            )

        return response.json() if response.content else {}

    async def get_user(self, user_id: str) -> IdentityUser:
        """Fetch a user with all three metadata bags."""
        try:
            payload = await self._request("GET", f"/v1/users/{user_id}")
        except (ClerkRateLimitError, httpx.TransportError) as e:
            raise ProfileStoreError(f"Failed to fetch Clerk user {user_id}: {e}") from e
        return IdentityUser.from_clerk(payload)

    async def merge_metadata(self, user_id: str, bag: str, patch: Dict[str, Any]) -> IdentityUser:
        """Deep-merge ``patch`` into one metadata bag of a user.

        Clerk merges server-side: keys not in the patch are kept and keys whose
        value is null are removed.
        """
        try:
            payload = await self._request(
                "PATCH", f"/v1/users/{user_id}/metadata", json_data={bag: patch}
            )
        except (ClerkRateLimitError, httpx.TransportError) as e:
            raise ProfileStoreError(f"Failed to update Clerk metadata of {user_id}: {e}") from e
        logger.with_context(user_id=user_id).info(
            f"Updated {bag} keys: {', '.join(sorted(patch)) or '(none)'}"
        )
        return IdentityUser.from_clerk(payload)


_clerk_client: Optional[ClerkClient] = None


def get_clerk_client() -> ClerkClient:
    """Process-wide Clerk client, created on first use."""
    global _clerk_client
    if _clerk_client is None:
        _clerk_client = ClerkClient()
    return _clerk_client
