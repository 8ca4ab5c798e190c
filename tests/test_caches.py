import sys

sys.path.insert(0, '.')

import asyncio

import pytest

from cache.pnl_cache import PnlCache
from cache.position_cache import PositionCache
from risk.errors import ValidationError
from risk.models import PnlSnapshot, Position


class RecordingStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.synced = []

    async def sync_pnl(self, position_id, snapshot):
        if self.fail:
            raise ConnectionError("db down")
        self.synced.append((position_id, snapshot.pnl))


def _snapshot(position_id='p1', timestamp=1000.0, pnl=50.0):
    return PnlSnapshot(
        position_id=position_id,
        pnl=pnl,
        pnl_pct=5.0,
        last_price=105.0,
        high_water_mark=pnl,
        peak_pnl_pct=5.0,
        timestamp=timestamp,
    )


def test_pnl_cache_round_trip_returns_copies():
    cache = PnlCache()
    snapshot = _snapshot()
    cache.store('p1', snapshot)
    fetched = cache.fetch('p1')
    assert fetched == snapshot
    fetched.pnl = -1.0
    assert cache.fetch('p1').pnl == 50.0
    assert 'p1' in cache
    assert cache.fetch('missing') is None


@pytest.mark.parametrize("age,fresh", [(29.0, True), (30.0, True), (30.001, False)])
def test_staleness_boundary_is_inclusive(age, fresh):
    cache = PnlCache(staleness_threshold=30.0)
    now = 1000.0
    cache.store('p1', _snapshot(timestamp=now - age))
    assert cache.is_fresh(cache.fetch('p1'), now) is fresh
    assert (cache.fetch_fresh('p1', now) is not None) is fresh


def test_expired_entries_are_evicted():
    cache = PnlCache(ttl=0.0)
    cache.store('p1', _snapshot())
    assert cache.fetch('p1') is None
    assert len(cache) == 0


def test_sweep_drops_orphaned_and_expired_entries():
    store = RecordingStore()
    cache = PnlCache(store)
    cache.store('p1', _snapshot('p1'))
    cache.store('p2', _snapshot('p2'))
    asyncio.run(cache.sync_throttled('p2', now=100.0))

    assert cache.sweep(keep=['p1']) == 1
    assert cache.fetch('p1') is not None
    assert cache.fetch('p2') is None
    assert cache._last_sync == {}

    expiring = PnlCache(ttl=0.0)
    expiring.store('p1', _snapshot())
    assert expiring.sweep() == 1
    assert len(expiring) == 0


def test_update_peak_only_raises():
    cache = PnlCache()
    cache.store('p1', _snapshot())
    cache.update_peak('p1', 12.0)
    cache.update_peak('p1', 8.0)
    assert cache.fetch('p1').peak_pnl_pct == 12.0


def test_sync_is_throttled_per_position():
    store = RecordingStore()
    cache = PnlCache(store, sync_interval=30.0)
    cache.store('p1', _snapshot())

    async def run():
        results = [
            await cache.sync_throttled('p1', now=100.0),
            await cache.sync_throttled('p1', now=110.0),
            await cache.sync_throttled('p1', now=131.0),
        ]
        return results

    assert asyncio.run(run()) == [True, False, True]
    assert len(store.synced) == 2


def test_failed_sync_is_retried_next_time():
    store = RecordingStore(fail=True)
    cache = PnlCache(store, sync_interval=30.0)
    cache.store('p1', _snapshot())

    async def run():
        first = await cache.sync_throttled('p1', now=100.0)
        store.fail = False
        second = await cache.sync_throttled('p1', now=101.0)
        return first, second

    assert asyncio.run(run()) == (False, True)
    assert store.synced == [('p1', 50.0)]


def test_position_cache_prices_every_position_on_instrument():
    cache = PositionCache()
    long_pos = Position('NSE_FNO', '43120', 'long', 50, 100.0, id='a')
    short_pos = Position('NSE_FNO', '43120', 'short', 50, 100.0, id='b')
    other = Position('NSE_FNO', '43121', 'long', 50, 100.0, id='c')
    for position in (long_pos, short_pos, other):
        cache.add(position)

    updated = cache.update_price('43120', 110.0, segment='NSE_FNO', timestamp=1000.0)
    assert {p.id for p in updated} == {'a', 'b'}
    assert cache.get('a').pnl == pytest.approx(500.0)
    assert cache.get('b').pnl == pytest.approx(-500.0)
    assert cache.get('c').current_price is None


def test_position_cache_hands_out_copies():
    cache = PositionCache()
    cache.add(Position('NSE_FNO', '43120', 'long', 1, 100.0, id='a'))
    copy = cache.get('a')
    copy.stop_price = 1.0
    assert cache.get('a').stop_price is None
    snapshot = cache.snapshot_all()
    snapshot[0].peak_pnl_pct = 99.0
    assert cache.get('a').peak_pnl_pct == 0.0


def test_position_cache_rejects_direct_pnl_writes():
    cache = PositionCache()
    cache.add(Position('NSE_FNO', '43120', 'long', 1, 100.0, id='a'))
    with pytest.raises(ValidationError):
        cache.update_fields('a', pnl=10.0)
    assert cache.update_fields('a', peak_pnl_pct=4.0).peak_pnl_pct == 4.0


def test_position_cache_instrument_index_follows_removal():
    cache = PositionCache()
    cache.add(Position('NSE_FNO', '43120', 'long', 1, 100.0, id='a'))
    cache.add(Position('NSE_FNO', '43120', 'long', 1, 100.0, id='b'))
    cache.remove('a')
    assert cache.has_instrument('NSE_FNO', '43120')
    cache.remove('b')
    assert not cache.has_instrument('NSE_FNO', '43120')
    assert len(cache) == 0
