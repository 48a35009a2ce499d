import asyncio
import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.fetch_cache import FetchCache


class _CountingProducer:
    def __init__(self, results=None, gate: asyncio.Event = None):
        self.calls = 0
        self.results = list(results or [])
        self.gate = gate

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return f"payload-{self.calls}"


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_producer_call(fake_clock):
    cache = FetchCache(default_ttl=600, clock=fake_clock)
    gate = asyncio.Event()
    producer = _CountingProducer(gate=gate)

    waiters = [asyncio.create_task(cache.fetch("wallet", producer)) for _ in range(10)]
    await asyncio.sleep(0)
    assert cache.is_in_flight("wallet")
    gate.set()
    results = await asyncio.gather(*waiters)

    assert producer.calls == 1
    assert results == ["payload-1"] * 10
    assert not cache.is_in_flight("wallet")


@pytest.mark.asyncio
async def test_fresh_entry_served_until_ttl_boundary(fake_clock):
    cache = FetchCache(default_ttl=600, clock=fake_clock)
    producer = _CountingProducer()

    assert await cache.fetch("wallet", producer) == "payload-1"
    fake_clock.advance(599.5)
    assert await cache.fetch("wallet", producer) == "payload-1"
    assert producer.calls == 1

    fake_clock.advance(0.5)
    assert await cache.fetch("wallet", producer) == "payload-2"
    assert producer.calls == 2


@pytest.mark.asyncio
async def test_fresh_hit_does_not_suspend(fake_clock):
    cache = FetchCache(clock=fake_clock)
    cache.put("wallet", ["t1"])

    coro = cache.fetch("wallet", _CountingProducer())
    with pytest.raises(StopIteration) as done:
        coro.send(None)
    assert done.value.value == ["t1"]


@pytest.mark.asyncio
async def test_failure_clears_in_flight_marker_and_propagates(fake_clock):
    cache = FetchCache(clock=fake_clock)
    producer = _CountingProducer(results=[RuntimeError("store down"), "recovered"])

    with pytest.raises(RuntimeError):
        await cache.fetch("wallet", producer)
    assert not cache.is_in_flight("wallet")
    assert cache.peek("wallet") is None

    assert await cache.fetch("wallet", producer) == "recovered"
    assert cache.get_stats()["producer_failures"] == 1


@pytest.mark.asyncio
async def test_concurrent_callers_all_see_the_same_failure(fake_clock):
    cache = FetchCache(clock=fake_clock)
    gate = asyncio.Event()
    producer = _CountingProducer(results=[RuntimeError("store down")], gate=gate)

    waiters = [asyncio.create_task(cache.fetch("wallet", producer)) for _ in range(3)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*waiters, return_exceptions=True)

    assert producer.calls == 1
    assert all(isinstance(r, RuntimeError) for r in results)


@pytest.mark.asyncio
async def test_force_refresh_bypasses_cache(fake_clock):
    cache = FetchCache(clock=fake_clock)
    producer = _CountingProducer()

    await cache.fetch("wallet", producer)
    assert await cache.fetch("wallet", producer, force_refresh=True) == "payload-2"
    assert cache.peek("wallet") == "payload-2"


@pytest.mark.asyncio
async def test_force_refresh_joins_in_flight_fetch(fake_clock):
    cache = FetchCache(clock=fake_clock)
    gate = asyncio.Event()
    producer = _CountingProducer(gate=gate)

    normal = asyncio.create_task(cache.fetch("wallet", producer))
    await asyncio.sleep(0)
    forced = asyncio.create_task(cache.fetch("wallet", producer, force_refresh=True))
    await asyncio.sleep(0)
    gate.set()

    assert await asyncio.gather(normal, forced) == ["payload-1", "payload-1"]
    assert producer.calls == 1
    assert cache.get_stats()["joins"] == 1


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_fetch(fake_clock):
    cache = FetchCache(clock=fake_clock)
    gate = asyncio.Event()
    producer = _CountingProducer(gate=gate)

    first = asyncio.create_task(cache.fetch("wallet", producer))
    second = asyncio.create_task(cache.fetch("wallet", producer))
    await asyncio.sleep(0)
    first.cancel()
    gate.set()

    assert await second == "payload-1"
    with pytest.raises(asyncio.CancelledError):
        await first
    assert not cache.is_in_flight("wallet")


@pytest.mark.asyncio
async def test_per_call_ttl_and_invalidate(fake_clock):
    cache = FetchCache(default_ttl=600, clock=fake_clock)
    producer = _CountingProducer()

    await cache.fetch("wallet", producer, ttl=5)
    fake_clock.advance(5)
    assert cache.peek("wallet") is None

    await cache.fetch("wallet", producer)
    cache.invalidate("wallet")
    assert cache.peek("wallet") is None

    cache.put("other", 1)
    cache.clear()
    assert cache.get_stats()["entries"] == 0


def test_rejects_negative_ttl():
    with pytest.raises(ValueError):
        FetchCache(default_ttl=-1)
