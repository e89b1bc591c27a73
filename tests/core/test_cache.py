import asyncio

import pytest

from torstream.core.cache import RequestDeduplicator, TTLCache


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_ttl_cache_expires_entries():
    clock = Clock()
    cache = TTLCache(default_ttl=10, clock=clock)
    cache.set("k", "v")
    assert cache.get("k") == "v"
    clock.now += 9.9
    assert "k" in cache
    clock.now += 0.2
    assert cache.get("k") is None
    assert cache.get("k", "default") == "default"


def test_ttl_cache_per_entry_ttl_and_prune():
    clock = Clock()
    cache = TTLCache(default_ttl=60, clock=clock)
    cache.set("short", 1, ttl=1)
    cache.set("long", 2)
    clock.now += 5
    assert cache.prune() == 1
    assert len(cache) == 1
    assert cache.get("long") == 2


def test_ttl_cache_without_ttl_keeps_entries():
    clock = Clock()
    cache = TTLCache(clock=clock)
    cache.set("k", "v")
    clock.now += 10 ** 6
    assert cache.get("k") == "v"
    cache.delete("k")
    assert cache.get("k") is None


def test_reserve_inserts_only_when_absent():
    clock = Clock()
    cache = TTLCache(default_ttl=5, clock=clock)
    assert cache.reserve("k", "first") == ("first", True)
    assert cache.reserve("k", "second") == ("first", False)
    clock.now += 6
    assert cache.reserve("k", "third") == ("third", True)


@pytest.mark.asyncio
async def test_deduplicator_shares_one_run():
    dedup = RequestDeduplicator()
    calls = 0
    release = asyncio.Event()

    async def work():
        nonlocal calls
        calls += 1
        await release.wait()
        return "result"

    first = asyncio.create_task(dedup.run("key", work))
    second = asyncio.create_task(dedup.run("key", work))
    await asyncio.sleep(0)
    assert dedup.in_flight("key")

    release.set()
    assert await asyncio.gather(first, second) == ["result", "result"]
    assert calls == 1
    assert not dedup.in_flight("key")


@pytest.mark.asyncio
async def test_deduplicator_propagates_failure_and_clears_entry():
    dedup = RequestDeduplicator()
    attempts = 0

    async def failing():
        nonlocal attempts
        attempts += 1
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await dedup.run("key", failing)
    assert not dedup.in_flight("key")

    with pytest.raises(ValueError):
        await dedup.run("key", failing)
    assert attempts == 2


@pytest.mark.asyncio
async def test_deduplicator_keeps_running_when_caller_cancels():
    dedup = RequestDeduplicator()
    release = asyncio.Event()
    finished = []

    async def work():
        await release.wait()
        finished.append(True)
        return 1

    caller = asyncio.create_task(dedup.run("key", work))
    await asyncio.sleep(0)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    assert dedup.in_flight("key")
    release.set()
    assert await dedup.run("key", work) == 1
    assert finished == [True]
