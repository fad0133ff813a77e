import asyncio
from datetime import datetime, timezone

import pytest

from gateway.quota import (
    InMemoryUsageStore,
    PlanTier,
    QuotaTracker,
    UsageRecord,
    UsageStoreConflict,
    parse_tier,
)

LIMITS = {"free": 10, "silver": 30, "gold": 100, "admin": None}
DAY1 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
DAY2 = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)


def tracker(records=(), **kw):
    store = InMemoryUsageStore(records)
    return QuotaTracker(store, LIMITS, clock=lambda: DAY1, **kw), store


@pytest.mark.asyncio
async def test_denied_at_limit():
    qt, store = tracker([UsageRecord("u1", "2024-01-01", count=10)])
    d = await qt.check_and_consume("u1", "free", "image")
    assert not d.allowed
    assert (d.count, d.pending, d.limit) == (10, 0, 10)
    assert (await store.get("u1")).pending == 0


@pytest.mark.asyncio
async def test_denial_counts_in_flight_reservations():
    qt, _ = tracker([UsageRecord("u1", "2024-01-01", count=9, pending=1)])
    d = await qt.check_and_consume("u1", "free", "image")
    assert not d.allowed
    assert (d.count, d.pending) == (9, 1)
    assert "1 in flight" in d.reason


@pytest.mark.asyncio
async def test_commit_charges_once_and_release_charges_nothing():
    qt, store = tracker()
    d = await qt.check_and_consume("u1", PlanTier.FREE)
    assert d.allowed and d.reserved
    assert await store.get("u1") == UsageRecord("u1", "2024-01-01", count=0, pending=1)
    await qt.commit(d)
    assert await store.get("u1") == UsageRecord("u1", "2024-01-01", count=1, pending=0)

    d2 = await qt.check_and_consume("u1", PlanTier.FREE)
    await qt.release(d2)
    assert await store.get("u1") == UsageRecord("u1", "2024-01-01", count=1, pending=0)


@pytest.mark.asyncio
async def test_period_rollover_resets_count_in_the_same_check():
    qt, store = tracker([UsageRecord("u1", "2024-01-01", count=10)])
    d = await qt.check_and_consume("u1", "free", now=DAY2)
    assert d.allowed
    assert d.period_key == "2024-01-02"
    assert d.count == 0
    await qt.commit(d)
    assert await store.get("u1") == UsageRecord("u1", "2024-01-02", count=1, pending=0)


@pytest.mark.asyncio
async def test_admin_is_never_denied_and_not_tracked():
    qt, store = tracker()
    for _ in range(1000):
        d = await qt.check_and_consume("root", "admin")
        assert d.allowed
        assert d.limit is None
        await qt.commit(d)
    assert await store.get("root") is None


@pytest.mark.asyncio
async def test_text_kind_is_not_metered():
    qt, store = tracker([UsageRecord("u1", "2024-01-01", count=10)])
    d = await qt.check_and_consume("u1", "free", "text")
    assert d.allowed and not d.reserved
    assert (await store.get("u1")).count == 10


@pytest.mark.asyncio
async def test_in_flight_reservation_blocks_concurrent_request_at_limit():
    qt, _ = tracker([UsageRecord("u1", "2024-01-01", count=9)])
    first, second = await asyncio.gather(
        qt.check_and_consume("u1", "free"),
        qt.check_and_consume("u1", "free"),
    )
    assert [first.allowed, second.allowed].count(True) == 1


@pytest.mark.asyncio
async def test_released_reservation_frees_the_slot():
    qt, _ = tracker([UsageRecord("u1", "2024-01-01", count=9)])
    d = await qt.check_and_consume("u1", "free")
    assert not (await qt.check_and_consume("u1", "free")).allowed
    await qt.release(d)
    assert (await qt.check_and_consume("u1", "free")).allowed


@pytest.mark.asyncio
async def test_commit_after_rollover_drops_stale_reservation():
    qt, store = tracker()
    d = await qt.check_and_consume("u1", "free", now=DAY1)
    fresh = await qt.check_and_consume("u1", "free", now=DAY2)
    await qt.commit(d)
    assert await store.get("u1") == UsageRecord("u1", "2024-01-02", count=0, pending=1)
    await qt.commit(fresh)
    assert (await store.get("u1")).count == 1


def test_period_key_uses_configured_timezone():
    qt, _ = tracker(timezone="Asia/Taipei")
    assert qt.period_key(datetime(2024, 1, 1, 20, 0, tzinfo=timezone.utc)) == "2024-01-02"
    assert qt.period_key(datetime(2024, 1, 1, 20, 0)) == "2024-01-02"


def test_tiers():
    assert parse_tier("GOLD") is PlanTier.GOLD
    assert parse_tier("platinum") is PlanTier.FREE
    assert parse_tier(None) is PlanTier.FREE
    qt, _ = tracker()
    assert qt.limit_for("silver") == 30
    assert qt.limit_for("admin") is None


@pytest.mark.asyncio
async def test_usage_snapshot():
    qt, _ = tracker([UsageRecord("u1", "2024-01-01", count=4, pending=1)])
    snap = await qt.usage("u1", "free")
    assert (snap.used, snap.pending, snap.limit, snap.remaining) == (4, 1, 10, 5)
    stale = await qt.usage("u1", "free", now=DAY2)
    assert stale.used == 0 and stale.remaining == 10
    assert (await qt.usage("root", "admin")).remaining is None


class StubbornStore(InMemoryUsageStore):
    async def compare_and_swap(self, subject_id, expected, new):
        return False


@pytest.mark.asyncio
async def test_store_that_never_settles_raises_conflict():
    qt = QuotaTracker(StubbornStore(), LIMITS, clock=lambda: DAY1, max_retries=3)
    with pytest.raises(UsageStoreConflict):
        await qt.check_and_consume("u1", "free")
