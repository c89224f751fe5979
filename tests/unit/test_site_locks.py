"""
Unit tests for per-site locks.
"""

import asyncio

import pytest

from core.site_locks import SiteLocks


class TestSiteLocks:

    @pytest.mark.asyncio
    async def test_same_site_is_serialized(self):
        locks = SiteLocks()
        order = []

        async def mutate(label: str):
            async with locks.hold("site-1"):
                order.append(f"{label}-start")
                await asyncio.sleep(0.01)
                order.append(f"{label}-end")

        await asyncio.gather(mutate("a"), mutate("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_sites_run_concurrently(self):
        locks = SiteLocks()
        entered = asyncio.Event()

        async def first():
            async with locks.hold("site-1"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def second():
            async with locks.hold("site-2"):
                entered.set()

        await asyncio.gather(first(), second())

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = SiteLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("site-1"):
                assert locks.is_locked("site-1")
                raise RuntimeError("render failed")

        assert locks.is_locked("site-1") is False
        assert locks._locks == {}

    @pytest.mark.asyncio
    async def test_disabled(self):
        locks = SiteLocks(enabled=False)

        async with locks.hold("site-1"):
            async with locks.hold("site-1"):
                assert locks.is_locked("site-1") is False
