"""Redis client configuration."""

import platform
import socket
from typing import Optional

import redis.asyncio as redis

from studyhall.core.config import settings
from studyhall.core.logging import logger


class RedisClient:
    """Redis client wrapper with a lazily created connection pool.

    Billing only needs Redis to hold short-lived per-user transition leases,
    so a single small pool is enough.
    """

    def __init__(self, max_connections: int = 20):
        """Initialize the wrapper without connecting."""
        self._client: Optional[redis.Redis] = None
        self._max_connections = max_connections

    @property
    def client(self) -> redis.Redis:
        """Get or create the Redis client."""
        if self._client is None:
            self._client = self._create_client()
        return self._client

    def _get_socket_keepalive_options(self) -> dict:
        """Get socket keepalive options based on the OS.

        macOS rejects the Linux TCP keepalive options, so it gets none.
        """
        if platform.system() == "Darwin":
            return {}
        if hasattr(socket, "TCP_KEEPIDLE"):
            return {
                socket.TCP_KEEPIDLE: 60,
                socket.TCP_KEEPINTVL: 10,
                socket.TCP_KEEPCNT: 6,
            }
        return {}

    def _create_client(self) -> redis.Redis:
        pool = redis.ConnectionPool(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD or None,
            decode_responses=True,
            max_connections=self._max_connections,
            retry_on_timeout=True,
            socket_keepalive=True,
            socket_keepalive_options=self._get_socket_keepalive_options(),
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return redis.Redis(connection_pool=pool)

    async def test_connection(self) -> bool:
        """Test Redis connection.

        Returns:
            True if connection is successful, False otherwise
        """
        try:
            await self.client.ping()
            logger.info("Redis connection successful")
            return True
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.error(f"Redis connection failed: {e}")
            return False

    async def close(self) -> None:
        """Close Redis connection gracefully."""
        if self._client:
            await self._client.aclose()
            self._client = None


# Create a global instance
redis_client = RedisClient()
