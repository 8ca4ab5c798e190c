import asyncio
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import websockets

from api.metrics import MetricsCollector
from cache.pnl_cache import PnlCache
from cache.position_cache import PositionCache
from monitoring.async_utils import run_tasks_with_cleanup
from risk.models import PnlSnapshot, Tick


logger = logging.getLogger(__name__)

TickHandler = Callable[[Tick], Awaitable[None]]
InstrumentKey = Tuple[str, str]


class TickListener:
    """Streaming feed client that prices the position cache.

    PnL snapshots produced by ticks are parked in a pending map and written to
    the PnL cache by ``flush_loop`` in batches, so bursts never reach the
    shared cache one tick at a time.
    """

    def __init__(
        self,
        url: str,
        position_cache: PositionCache,
        pnl_cache: PnlCache,
        metrics: Optional[MetricsCollector] = None,
        reconnect_backoff: Sequence[float] = (1, 2, 5, 10, 30),
        max_reconnects_per_minute: int = 10,
        stream_timeout: float = 15.0,
        liveness_grace: float = 5.0,
        flush_interval: float = 0.25,
    ):
        self.url = url
        self.position_cache = position_cache
        self.pnl_cache = pnl_cache
        self.metrics = metrics or MetricsCollector()
        self.reconnect_backoff = list(reconnect_backoff) or [1]
        self.max_reconnects = max_reconnects_per_minute
        self.stream_timeout = stream_timeout
        self.liveness_grace = liveness_grace
        self.flush_interval = flush_interval

        self.handlers: Dict[str, List[Callable]] = {}
        self.running = False
        self.connected = False
        self.reconnect_count = 0
        self.last_reconnect_window = time.time()
        self.gap_start_ts: Optional[float] = None
        self.last_tick_at: Optional[float] = None

        self._instruments: Set[InstrumentKey] = set()
        self._pending: Dict[str, PnlSnapshot] = {}
        self._ws = None

    @classmethod
    def from_config(cls, cfg, position_cache: PositionCache, pnl_cache: PnlCache,
                    metrics: Optional[MetricsCollector] = None, flush_interval: float = 0.25) -> 'TickListener':
        return cls(
            cfg['url'],
            position_cache,
            pnl_cache,
            metrics=metrics,
            reconnect_backoff=cfg.get('reconnect_backoff', [1, 2, 5, 10, 30]),
            max_reconnects_per_minute=int(cfg.get('max_reconnects_per_minute', 10)),
            stream_timeout=float(cfg.get('stream_stale_s', 15)),
            liveness_grace=float(cfg.get('liveness_grace_s', 5)),
            flush_interval=flush_interval,
        )

    def register_handler(self, event: str, handler: Callable):
        self.handlers.setdefault(event, []).append(handler)

    # Subscriptions

    @property
    def instruments(self) -> Set[InstrumentKey]:
        return set(self._instruments)

    def is_subscribed(self, segment: str, instrument_id: str) -> bool:
        return (segment, str(instrument_id)) in self._instruments

    async def subscribe(self, segment: str, instrument_id: str):
        key = (segment, str(instrument_id))
        if key in self._instruments:
            return
        self._instruments.add(key)
        await self._send_subscription('subscribe', [key])

    async def unsubscribe(self, segment: str, instrument_id: str):
        key = (segment, str(instrument_id))
        if key not in self._instruments:
            return
        self._instruments.discard(key)
        await self._send_subscription('unsubscribe', [key])

    async def _send_subscription(self, action: str, keys: Iterable[InstrumentKey]):
        ws = self._ws
        keys = list(keys)
        if ws is None or not self.connected or not keys:
            return
        frame = {
            'action': action,
            'instruments': [{'segment': seg, 'instrument_id': iid} for seg, iid in keys],
        }
        try:
            await ws.send(json.dumps(frame))
        except Exception as e:
            # The full set is re-sent after the next reconnect.
            logger.warning("Failed to %s %d instruments: %s", action, len(keys), e)

    # Tick handling

    async def handle_message(self, raw: Any) -> int:
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes, bytearray)) else raw
        except ValueError:
            self.metrics.record_drop('malformed_frame')
            logger.debug("Dropping malformed frame: %r", raw)
            return 0
        items = data if isinstance(data, list) else [data]
        applied = 0
        for item in items:
            if isinstance(item, dict) and item.get('type') == 'order_update':
                await self._dispatch('order_update', item)
                continue
            tick = self._parse_tick(item)
            if tick is None:
                continue
            await self.on_tick(tick)
            applied += 1
        return applied

    def _parse_tick(self, item: Any) -> Optional[Tick]:
        if not isinstance(item, dict):
            self.metrics.record_drop('malformed_tick')
            return None
        if item.get('type') not in (None, 'tick', 'ticker', 'quote'):
            return None
        try:
            price = float(item.get('price', item.get('ltp')))
            instrument_id = str(item['instrument_id'])
        except (KeyError, TypeError, ValueError):
            self.metrics.record_drop('malformed_tick')
            return None
        if price <= 0:
            self.metrics.record_drop('non_positive_price')
            return None
        ts = item.get('timestamp')
        try:
            timestamp = float(ts) if ts is not None else time.time()
        except (TypeError, ValueError):
            timestamp = time.time()
        if timestamp > 1e12:
            timestamp /= 1000.0
        return Tick(segment=str(item.get('segment', '')), instrument_id=instrument_id, price=price, timestamp=timestamp)

    async def on_tick(self, tick: Tick):
        self.last_tick_at = time.time()
        updated = self.position_cache.update_price(
            tick.instrument_id, tick.price, segment=tick.segment or None, timestamp=tick.timestamp
        )
        for position in updated:
            snapshot = position.snapshot(tick.timestamp)
            if snapshot is not None:
                self._pending[position.id] = snapshot
        self.metrics.record_tick()
        await self._dispatch('tick', tick)

    async def _dispatch(self, event: str, payload: Any):
        for handler in self.handlers.get(event, ()):
            try:
                await handler(payload)
            except Exception:
                logger.exception("%s subscriber failed", event)

    def discard_pending(self, position_id: str) -> None:
        self._pending.pop(position_id, None)

    async def flush(self) -> int:
        if not self._pending:
            return 0
        batch, self._pending = self._pending, {}
        # Positions exited since the tick no longer own a PnL entry.
        batch = {pid: snap for pid, snap in batch.items() if self.position_cache.contains(pid)}
        for position_id, snapshot in batch.items():
            self.pnl_cache.store(position_id, snapshot)
        for position_id in batch:
            await self.pnl_cache.sync_throttled(position_id)
        self.metrics.record_pnl_flush(len(batch))
        return len(batch)

    async def flush_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.flush_interval)
                await self.flush()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("PnL flush failed: %s", e)
        await self.flush()

    # Connection

    async def _handle_reconnect(self, backoff_index: int = 0) -> bool:
        if backoff_index >= len(self.reconnect_backoff):
            backoff_index = len(self.reconnect_backoff) - 1

        now = time.time()
        if now - self.last_reconnect_window > 60:
            self.reconnect_count = 0
            self.last_reconnect_window = now

        self.reconnect_count += 1
        self.metrics.record_reconnect()

        if self.reconnect_count > self.max_reconnects:
            logger.warning("%s feed reconnects in 60s; using extended backoff", self.reconnect_count)
            self.reconnect_count = 0
            self.last_reconnect_window = now
            delay = self.reconnect_backoff[-1] + random.uniform(0, 0.5)
        else:
            delay = self.reconnect_backoff[backoff_index] + random.uniform(0, 0.5)
        logger.info("Reconnecting feed in %.1fs (attempt %s)", delay, self.reconnect_count)
        await asyncio.sleep(delay)
        return self.running

    async def listen(self):
        backoff_index = 0
        while self.running:
            try:
                async with websockets.connect(self.url, ping_interval=20) as ws:
                    self._ws = ws
                    self.connected = True
                    await self._send_subscription('subscribe', sorted(self._instruments))
                    if self.gap_start_ts is not None:
                        logger.info("Feed reconnected after %.1fs gap; re-subscribed %d instruments",
                                    time.time() - self.gap_start_ts, len(self._instruments))
                        self.gap_start_ts = None
                    backoff_index = 0
                    for handler in self.handlers.get('reconnected', ()):
                        await handler()

                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stream_timeout + self.liveness_grace)
                        except asyncio.TimeoutError:
                            if not self._instruments:
                                continue
                            logger.warning("Feed stale for %.0fs; reconnecting", self.stream_timeout + self.liveness_grace)
                            raise
                        await self.handle_message(raw)

            except asyncio.CancelledError:
                break
            except Exception as e:
                if not self.running:
                    break
                logger.error("Feed connection error: %s", e)
                if self.gap_start_ts is None:
                    self.gap_start_ts = time.time()
                self.connected = False
                self._ws = None
                if not await self._handle_reconnect(backoff_index):
                    break
                backoff_index = min(backoff_index + 1, len(self.reconnect_backoff) - 1)
            finally:
                self.connected = False
                self._ws = None

    async def start(self):
        self.running = True
        tasks = [
            asyncio.create_task(self.listen(), name='tick-listener'),
            asyncio.create_task(self.flush_loop(), name='pnl-flush'),
        ]
        await run_tasks_with_cleanup(tasks, cleanup=self.flush)

    async def stop(self):
        self.running = False
        ws = self._ws
        if ws is not None:
            await ws.close()
