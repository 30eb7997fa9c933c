"""Tests for KeyedLock."""
import asyncio

from artifactstore.services.locks import KeyedLock


class TestKeyedLock:
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        inside = 0
        peak = 0

        async def worker():
            nonlocal inside, peak
            async with locks.hold("subject"):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert peak == 1
        assert len(locks) == 0

    async def test_different_keys_run_in_parallel(self):
        locks = KeyedLock()
        both_inside = asyncio.Event()
        entered = []

        async def worker(key):
            async with locks.hold(key):
                entered.append(key)
                if len(entered) == 2:
                    both_inside.set()
                await asyncio.wait_for(both_inside.wait(), timeout=1)

        await asyncio.gather(worker("a"), worker("b"))
        assert sorted(entered) == ["a", "b"]

    async def test_released_on_error(self):
        locks = KeyedLock()
        try:
            async with locks.hold("k"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert len(locks) == 0
        async with locks.hold("k"):
            pass
