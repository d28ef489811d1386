import asyncio

import pytest

from agentgate.concurrency import ConversationLockManager, DeliveryDeduplicator


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_mark_seen_only_once(db):
    dedup = DeliveryDeduplicator(db.path)
    assert await dedup.mark_seen("evt-1") is True
    assert await dedup.mark_seen("evt-1") is False
    assert await dedup.seen("evt-1") is True
    assert await dedup.seen("evt-2") is False


@pytest.mark.asyncio
async def test_concurrent_deliveries_have_one_winner(db):
    dedup = DeliveryDeduplicator(db.path)
    results = await asyncio.gather(*(dedup.mark_seen("evt-race") for _ in range(5)))
    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_second_acquire_is_busy_until_release(db):
    locks = ConversationLockManager(db.path, ttl_s=30, clock=FakeClock())
    lease = await locks.acquire("c1")
    assert lease is not None
    assert await locks.acquire("c1") is None
    assert await locks.is_locked("c1") is True
    assert await locks.acquire("c2") is not None

    await locks.release(lease)
    assert await locks.is_locked("c1") is False
    assert await locks.acquire("c1") is not None


@pytest.mark.asyncio
async def test_stale_lock_is_taken_over(db):
    clock = FakeClock()
    locks = ConversationLockManager(db.path, ttl_s=30, clock=clock)
    stale = await locks.acquire("c1")
    clock.now += 29
    assert await locks.acquire("c1") is None
    clock.now += 2
    fresh = await locks.acquire("c1")
    assert fresh is not None
    assert fresh.token != stale.token

    # The crashed holder's late release must not drop the new lease.
    await locks.release(stale)
    assert await locks.is_locked("c1") is True
    assert await locks.renew(stale) is False


@pytest.mark.asyncio
async def test_renew_extends_the_lease(db):
    clock = FakeClock()
    locks = ConversationLockManager(db.path, ttl_s=30, clock=clock)
    lease = await locks.acquire("c1")
    clock.now += 25
    assert await locks.renew(lease) is True
    clock.now += 25
    assert await locks.acquire("c1") is None


@pytest.mark.asyncio
async def test_hold_releases_on_error(db):
    locks = ConversationLockManager(db.path, ttl_s=30, clock=FakeClock())
    with pytest.raises(RuntimeError):
        async with locks.hold("c1") as lease:
            assert lease is not None
            raise RuntimeError("turn crashed")
    assert await locks.is_locked("c1") is False


@pytest.mark.asyncio
async def test_hold_yields_none_when_busy(db):
    locks = ConversationLockManager(db.path, ttl_s=30, clock=FakeClock())
    async with locks.hold("c1") as first:
        async with locks.hold("c1") as second:
            assert first is not None
            assert second is None
        assert await locks.is_locked("c1") is True
    assert await locks.is_locked("c1") is False


@pytest.mark.asyncio
async def test_concurrent_acquire_has_one_winner(db):
    locks = ConversationLockManager(db.path, ttl_s=30, clock=FakeClock())
    results = await asyncio.gather(*(locks.acquire("c1") for _ in range(4)))
    assert sum(1 for lease in results if lease is not None) == 1
