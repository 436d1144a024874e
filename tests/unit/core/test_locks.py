"""Unit tests for KeyedLockRegistry."""

import asyncio

import pytest

from app.core.exceptions import LockTimeoutError
from app.core.locks import KeyedLockRegistry, subscription_key, user_key


class TestKeyedLockRegistry:
    """Tests for per-key serialization, timeouts and cleanup."""

    def setup_method(self):
        self.locks = KeyedLockRegistry()

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        order: list[str] = []

        async def worker(name: str):
            async with self.locks.hold("subscription:1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        inside = asyncio.Event()

        async def holder():
            async with self.locks.hold("subscription:1"):
                inside.set()
                await asyncio.sleep(0.05)

        task = asyncio.create_task(holder())
        await inside.wait()
        async with self.locks.hold("subscription:2", timeout=0.01):
            assert self.locks.is_locked("subscription:1")
        await task

    @pytest.mark.asyncio
    async def test_timeout_raises_lock_timeout(self):
        held = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with self.locks.hold("user:u1"):
                held.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await held.wait()
        with pytest.raises(LockTimeoutError) as exc_info:
            async with self.locks.hold("user:u1", timeout=0.01):
                pass
        assert exc_info.value.status_code == 503
        release.set()
        await task

    @pytest.mark.asyncio
    async def test_released_when_body_raises(self):
        with pytest.raises(RuntimeError):
            async with self.locks.hold("subscription:1"):
                raise RuntimeError("boom")

        assert not self.locks.is_locked("subscription:1")
        async with self.locks.hold("subscription:1", timeout=0.01):
            pass

    @pytest.mark.asyncio
    async def test_entries_are_cleaned_up(self):
        async with self.locks.hold("subscription:1"):
            assert len(self.locks) == 1
        assert len(self.locks) == 0

    def test_key_helpers(self):
        assert subscription_key("abc") == "subscription:abc"
        assert user_key("u1") == "user:u1"
