import sys

sys.path.insert(0, '.')

import asyncio
import contextlib
import json

import pytest
import websockets

from api.metrics import MetricsCollector
from cache.pnl_cache import PnlCache
from cache.position_cache import PositionCache
from execution.simulators.paper import PaperOrderRouter
from ingest import tick_listener
from ingest.tick_listener import TickListener
from orchestration.lifecycle import register_position
from orchestration.persistence import InMemoryPositionStore
from risk.circuit_breaker import CircuitBreaker
from risk.exit_engine import ExitEngine
from risk.models import Position


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send(self, frame):
        self.sent.append(json.loads(frame))


class ScriptedSocket(FakeSocket):
    """Replays frames; an exception in the script drops the connection."""

    def __init__(self, frames, on_exhausted=None):
        super().__init__()
        self.frames = list(frames)
        self.on_exhausted = on_exhausted

    async def recv(self):
        if not self.frames:
            if self.on_exhausted is not None:
                self.on_exhausted()
            raise ConnectionError("closed by test")
        frame = self.frames.pop(0)
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def close(self):
        pass


def _listener():
    store = InMemoryPositionStore()
    position_cache = PositionCache()
    pnl_cache = PnlCache(store, sync_interval=30.0)
    listener = TickListener('wss://feed.test/ws', position_cache, pnl_cache, metrics=MetricsCollector())
    return listener, store, position_cache, pnl_cache


def test_tick_prices_cache_and_flush_batches_snapshots():
    listener, store, position_cache, pnl_cache = _listener()
    position = Position('NSE_FNO', '43120', 'long', 50, 100.0)
    position_cache.add(position)

    async def run():
        await store.create(position)
        applied = await listener.handle_message(json.dumps([
            {'segment': 'NSE_FNO', 'instrument_id': 43120, 'price': 104.0, 'timestamp': 1_700_000_000_000},
            {'segment': 'NSE_FNO', 'instrument_id': 43120, 'ltp': 105.0, 'timestamp': 1_700_000_001_000},
        ]))
        assert pnl_cache.fetch(position.id) is None
        flushed = await listener.flush()
        return applied, flushed

    applied, flushed = asyncio.run(run())
    assert applied == 2
    assert flushed == 1
    cached = position_cache.get(position.id)
    assert cached.current_price == 105.0
    assert cached.last_price_at == pytest.approx(1_700_000_001.0)
    snapshot = pnl_cache.fetch(position.id)
    assert snapshot.last_price == 105.0
    assert snapshot.pnl == pytest.approx(250.0)
    assert asyncio.run(store.get(position.id)).current_price == 105.0


@pytest.mark.parametrize("frame", [
    "not json",
    json.dumps({'segment': 'NSE_FNO', 'price': 10.0}),
    json.dumps({'segment': 'NSE_FNO', 'instrument_id': '1', 'price': 'abc'}),
    json.dumps({'segment': 'NSE_FNO', 'instrument_id': '1', 'price': 0}),
    json.dumps(['garbage']),
])
def test_malformed_frames_are_dropped(frame):
    listener, _, _, _ = _listener()
    assert asyncio.run(listener.handle_message(frame)) == 0


def test_tick_handlers_receive_ticks_and_failures_are_isolated():
    listener, _, _, _ = _listener()
    seen = []

    async def failing(tick):
        raise RuntimeError("subscriber bug")

    async def recording(tick):
        seen.append((tick.instrument_id, tick.price))

    listener.register_handler('tick', failing)
    listener.register_handler('tick', recording)
    asyncio.run(listener.handle_message({'segment': 'IDX_I', 'instrument_id': '13', 'price': 22000.5}))
    assert seen == [('13', 22000.5)]


def test_subscriptions_are_sent_only_when_connected():
    listener, _, _, _ = _listener()
    socket = FakeSocket()

    async def run():
        await listener.subscribe('NSE_FNO', '43120')
        listener._ws = socket
        listener.connected = True
        await listener.subscribe('NSE_FNO', '43121')
        await listener.subscribe('NSE_FNO', '43121')
        await listener.unsubscribe('NSE_FNO', '43120')

    asyncio.run(run())
    assert listener.instruments == {('NSE_FNO', '43121')}
    assert [frame['action'] for frame in socket.sent] == ['subscribe', 'unsubscribe']
    assert socket.sent[0]['instruments'] == [{'segment': 'NSE_FNO', 'instrument_id': '43121'}]


def test_register_position_persists_subscribes_and_caches():
    listener, store, position_cache, pnl_cache = _listener()
    position = Position(
        'NSE_FNO', '43120', 'long', 50, 100.0,
        underlying_segment='IDX_I', underlying_instrument_id='13',
    )
    position.apply_price(101.0)

    stored = asyncio.run(register_position(position, store, position_cache, pnl_cache, listener=listener))
    assert asyncio.run(store.get(stored.id)) is not None
    assert listener.is_subscribed('NSE_FNO', '43120')
    assert listener.is_subscribed('IDX_I', '13')
    assert position_cache.contains(stored.id)
    assert pnl_cache.fetch(stored.id).last_price == 101.0


def test_reconnect_resubscribes_full_instrument_set(monkeypatch):
    listener, _, position_cache, _ = _listener()
    listener.reconnect_backoff = [0.01]
    position = Position('NSE_FNO', '43120', 'long', 50, 100.0)
    position_cache.add(position)

    def stop():
        listener.running = False

    tick = json.dumps({'segment': 'NSE_FNO', 'instrument_id': '43120', 'price': 103.0})
    sockets = [
        ScriptedSocket([ConnectionResetError("feed dropped")]),
        ScriptedSocket([tick], on_exhausted=stop),
    ]
    connects = []
    reconnected = []

    @contextlib.asynccontextmanager
    async def fake_connect(url, **kwargs):
        socket = sockets[len(connects)]
        connects.append(url)
        yield socket

    async def on_reconnected():
        reconnected.append(len(connects))

    monkeypatch.setattr(websockets, 'connect', fake_connect)
    monkeypatch.setattr(tick_listener.random, 'uniform', lambda a, b: 0.0)
    listener.register_handler('reconnected', on_reconnected)

    async def run():
        await listener.subscribe('NSE_FNO', '43120')
        await listener.subscribe('IDX_I', '13')
        listener.running = True
        await asyncio.wait_for(listener.listen(), 2.0)

    asyncio.run(run())
    expected = [
        {'segment': 'IDX_I', 'instrument_id': '13'},
        {'segment': 'NSE_FNO', 'instrument_id': '43120'},
    ]
    assert len(connects) == 2
    assert sockets[0].sent == [{'action': 'subscribe', 'instruments': expected}]
    assert sockets[1].sent == [{'action': 'subscribe', 'instruments': expected}]
    assert listener.reconnect_count == 1
    assert listener.gap_start_ts is None
    assert reconnected == [1, 2]
    assert position_cache.get(position.id).current_price == 103.0
    assert not listener.connected


def test_flush_skips_positions_exited_after_their_tick():
    listener, store, position_cache, pnl_cache = _listener()
    engine = ExitEngine(store, PaperOrderRouter(), position_cache, pnl_cache, CircuitBreaker())
    position = Position('NSE_FNO', '43120', 'long', 50, 100.0)
    position_cache.add(position)

    async def run():
        await store.create(position)
        await listener.handle_message({'segment': 'NSE_FNO', 'instrument_id': '43120', 'price': 96.0})
        outcome = await engine.execute(position.id, 'SL HIT -4.00%')
        return outcome, await listener.flush()

    outcome, flushed = asyncio.run(run())
    assert outcome.executed
    assert flushed == 0
    assert pnl_cache.fetch(position.id) is None
    assert len(pnl_cache) == 0


def test_order_updates_reach_their_handlers():
    listener, _, position_cache, _ = _listener()
    updates = []

    async def on_update(update):
        updates.append(update)

    listener.register_handler('order_update', on_update)
    frame = {'type': 'order_update', 'order_id': 'ord-1', 'leg_name': 'STOP_LOSS_LEG', 'order_status': 'TRADED'}
    applied = asyncio.run(listener.handle_message(json.dumps([frame])))
    assert applied == 0
    assert updates == [frame]
