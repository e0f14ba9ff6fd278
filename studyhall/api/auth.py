"""Authentication module for the API.

Clerk issues RS256 session tokens; they are verified against the instance's
JWKS, which is fetched once and refreshed when a token names an unknown key.
"""

import asyncio
from typing import Any, Optional

import httpx
from jose import JWTError, jwt

from studyhall.core.config import settings
from studyhall.core.logging import logger


class ClerkSessionVerifier:
    """Verifies Clerk session tokens and returns the user id they carry."""

    algorithms = ["RS256"]

    def __init__(
        self,
        jwks_url: Optional[str],
        issuer: Optional[str] = None,
        authorized_parties: Optional[list[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the verifier.

        Args:
            jwks_url: URL of the Clerk instance's JSON Web Key Set.
            issuer: Expected ``iss`` claim, when set.
            authorized_parties: Accepted ``azp`` claims; empty accepts any.
            transport: Optional httpx transport, used by tests.
        """
        self.jwks_url = jwks_url
        self.issuer = issuer
        self.authorized_parties = authorized_parties or []
        self._transport = transport
        self._jwks: Optional[dict[str, Any]] = None
        self._lock = asyncio.Lock()

    async def _fetch_jwks(self) -> dict[str, Any]:
        async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
            response = await client.get(self.jwks_url)
            response.raise_for_status()
            return response.json()

    async def _signing_key(self, kid: Optional[str]) -> Optional[dict[str, Any]]:
        async with self._lock:
            for refresh in (False, True):
                if self._jwks is None or refresh:
                    self._jwks = await self._fetch_jwks()
                for key in self._jwks.get("keys", []):
                    if key.get("kid") == kid:
                        return key
        return None

    async def verify(self, token: str) -> Optional[str]:
        """Return the Clerk user id of a valid session token, else None."""
        if not token or not self.jwks_url:
            return None
        try:
            header = jwt.get_unverified_header(token)
            key = await self._signing_key(header.get("kid"))
            if key is None:
                logger.warning("Invalid kid header (wrong instance or rotated public key)")
                return None

            claims = jwt.decode(
                token,
                key,
                algorithms=self.algorithms,
                issuer=self.issuer,
                options={"verify_aud": False, "verify_iss": bool(self.issuer)},
            )
        except JWTError as e:
            logger.warning(f"Rejected session token: {e}")
            return None
        except httpx.HTTPError as e:
            logger.error(f"Could not fetch Clerk JWKS: {e}")
            return None

        azp = claims.get("azp")
        if self.authorized_parties and azp and azp not in self.authorized_parties:
            logger.warning(f"Rejected session token from unauthorized party {azp}")
            return None
        return claims.get("sub")


session_verifier = ClerkSessionVerifier(
    jwks_url=settings.CLERK_JWKS_URL,
    issuer=settings.CLERK_ISSUER,
    authorized_parties=settings.authorized_parties,
)


async def get_user_id_from_token(token: Optional[str]) -> Optional[str]:
    """Resolve the signed-in user of a request.

    When authentication is disabled every request runs as ``DEV_USER_ID``.
    """
    if not settings.AUTH_ENABLED:
        return settings.DEV_USER_ID
    if not token:
        return None
    return await session_verifier.verify(token)
