"""Per-user transition leases.

A lease serializes the read-decide-write sequence of billing changes for one
user, so two concurrent requests cannot both act on the same pre-update
subscription state.
"""

import asyncio
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis

from studyhall.core.exceptions import TransitionInProgressError
from studyhall.core.logging import logger

# Deletes the key only if it still holds our token, so an expired lease that was
# re-acquired by another request is never released by the previous holder.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class TransitionLease:
    """No mutual exclusion: each request runs independently."""

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        """Hold the lease for ``user_id`` for the duration of the block."""
        yield


class LocalTransitionLease(TransitionLease):
    """In-process lease: one asyncio.Lock per user, waited on in arrival order."""

    def __init__(self) -> None:
        """Initialize the lock registry."""
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        """Wait for and hold the user's lock."""
        lock = self._lock_for(user_id)
        async with lock:
            yield


class RedisTransitionLease(TransitionLease):
    """Cross-process lease stored in Redis with an expiry.

    Acquisition does not wait: a held lease answers 409 and the client retries.
    """

    KEY_PREFIX = "studyhall:billing:transition:"

    def __init__(self, client: redis.Redis, ttl_seconds: int = 30):
        """Initialize with a Redis client and lease expiry."""
        self.client = client
        self.ttl_ms = int(ttl_seconds * 1000)

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        """Acquire the lease or raise TransitionInProgressError."""
        key = f"{self.KEY_PREFIX}{user_id}"
        token = uuid.uuid4().hex
        acquired = await self.client.set(key, token, nx=True, px=self.ttl_ms)
        if not acquired:
            logger.with_context(user_id=user_id).info("Transition lease busy")
            raise TransitionInProgressError()
        try:
            yield
        finally:
            released = await self.client.eval(_RELEASE_SCRIPT, 1, key, token)
            if not released:
                logger.with_context(user_id=user_id).warning(
                    "Transition lease expired before the change finished"
                )


def create_transition_lease(
    backend: str, ttl_seconds: int = 30, client: Optional[redis.Redis] = None
) -> TransitionLease:
    """Build the lease for the configured backend (none, local or redis)."""
    if backend == "redis":
        if client is None:
            from studyhall.core.redis_client import redis_client

            client = redis_client.client
        return RedisTransitionLease(client, ttl_seconds)
    if backend == "local":
        return LocalTransitionLease()
    return TransitionLease()
