"""Unit tests for per-user transition leases."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from studyhall.core.exceptions import TransitionInProgressError
from studyhall.platform.billing.lease import (
    LocalTransitionLease,
    RedisTransitionLease,
    TransitionLease,
    create_transition_lease,
)


@pytest.mark.asyncio
class TestLocalTransitionLease:
    """In-process serialization."""

    async def test_same_user_runs_one_at_a_time(self):
        lease = LocalTransitionLease()
        events = []

        async def change(name):
            async with lease.hold("user_1"):
                events.append(f"{name} start")
                await asyncio.sleep(0.01)
                events.append(f"{name} end")

        await asyncio.gather(change("a"), change("b"))

        assert events == ["a start", "a end", "b start", "b end"]

    async def test_different_users_run_concurrently(self):
        lease = LocalTransitionLease()
        inside = asyncio.Event()

        async def first():
            async with lease.hold("user_1"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def second():
            async with lease.hold("user_2"):
                inside.set()

        await asyncio.gather(first(), second())

    async def test_lock_is_released_on_error(self):
        lease = LocalTransitionLease()

        with pytest.raises(ValueError):
            async with lease.hold("user_1"):
                raise ValueError("boom")

        async with lease.hold("user_1"):
            pass


@pytest.mark.asyncio
class TestRedisTransitionLease:
    """Cross-process lease with set-if-absent and token-checked release."""

    @pytest.fixture
    def client(self):
        client = AsyncMock()
        client.set.return_value = True
        client.eval.return_value = 1
        return client

    async def test_acquire_and_release_with_same_token(self, client):
        lease = RedisTransitionLease(client, ttl_seconds=30)

        async with lease.hold("user_1"):
            client.eval.assert_not_called()

        key = "studyhall:billing:transition:user_1"
        set_args, set_kwargs = client.set.call_args
        assert set_args[0] == key
        assert set_kwargs == {"nx": True, "px": 30_000}
        eval_args = client.eval.call_args.args
        assert eval_args[1:3] == (1, key)
        assert eval_args[3] == set_args[1]

    async def test_busy_lease_raises_without_running_the_block(self, client):
        client.set.return_value = None
        lease = RedisTransitionLease(client)
        ran = False

        with pytest.raises(TransitionInProgressError):
            async with lease.hold("user_1"):
                ran = True

        assert ran is False
        client.eval.assert_not_called()

    async def test_released_when_the_block_fails(self, client):
        lease = RedisTransitionLease(client)

        with pytest.raises(RuntimeError):
            async with lease.hold("user_1"):
                raise RuntimeError("stripe down")

        client.eval.assert_awaited_once()

    async def test_expired_lease_is_not_an_error(self, client):
        client.eval.return_value = 0
        lease = RedisTransitionLease(client)

        async with lease.hold("user_1"):
            pass


class TestCreateTransitionLease:
    """Backend selection."""

    def test_none(self):
        assert type(create_transition_lease("none")) is TransitionLease

    def test_local(self):
        assert isinstance(create_transition_lease("local"), LocalTransitionLease)

    def test_redis(self):
        lease = create_transition_lease("redis", ttl_seconds=5, client=AsyncMock())

        assert isinstance(lease, RedisTransitionLease)
        assert lease.ttl_ms == 5000
