import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from analytics.underlying import UnderlyingMonitor
from api.metrics import MetricsCollector
from cache.pnl_cache import PnlCache
from cache.position_cache import PositionCache
from config.risk_config import RiskConfig
from ingest.quote_client import QuoteClient
from monitoring.async_utils import join_with_timeout
from orchestration.persistence import PositionStore
from .circuit_breaker import CircuitBreaker
from .errors import CircuitOpenError, DataStalenessError, TransientIOError
from .exit_engine import ExitEngine
from .models import Position, PositionStatus
from .rule_engine import RuleEngine
from .rules import RuleContext
from .supervisor import Supervisor
from .trailing import TrailingEngine

if TYPE_CHECKING:
    from ingest.tick_listener import TickListener


logger = logging.getLogger(__name__)

_FILLED_STATUSES = {'filled', 'traded', 'complete'}
_BRACKET_LEGS = {
    'stop_loss': 'stop_loss',
    'stop_loss_leg': 'stop_loss',
    'take_profit': 'take_profit',
    'target': 'take_profit',
    'target_leg': 'take_profit',
}


@dataclass
class CycleReport:
    positions: int = 0
    cache_fetches: int = 0
    api_calls: int = 0
    stale: Set[str] = field(default_factory=set)
    exits: List[str] = field(default_factory=list)
    errors: int = 0
    duration: float = 0.0


class RiskManager:
    """Owns the monitoring loop and wires caches, engines and the exit path together."""

    def __init__(
        self,
        config: RiskConfig,
        store: PositionStore,
        position_cache: PositionCache,
        pnl_cache: PnlCache,
        breaker: CircuitBreaker,
        rule_engine: RuleEngine,
        trailing_engine: TrailingEngine,
        exit_engine: ExitEngine,
        metrics: MetricsCollector,
        quote_client: Optional[QuoteClient] = None,
        underlying_monitor: Optional[UnderlyingMonitor] = None,
        listener: Optional['TickListener'] = None,
    ):
        self.config = config
        self.store = store
        self.position_cache = position_cache
        self.pnl_cache = pnl_cache
        self.breaker = breaker
        self.rule_engine = rule_engine
        self.trailing_engine = trailing_engine
        self.exit_engine = exit_engine
        self.metrics = metrics
        self.quote_client = quote_client
        self.underlying_monitor = underlying_monitor
        self.listener = listener

        self.running = False
        self.started_at: Optional[float] = None
        self.last_cycle_at: Optional[float] = None
        self.supervisor: Optional[Supervisor] = None
        self._supervisor_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._last_reconcile = 0.0

    # Lifecycle

    async def start(self):
        if self.running:
            return
        self.running = True
        self.started_at = time.monotonic()
        self._wake = asyncio.Event()
        try:
            await self.reconcile()
        except Exception as e:
            logger.error("Initial reconciliation failed: %s", e)

        self.supervisor = Supervisor(
            'monitoring-loop',
            self.monitoring_loop,
            lambda: self.running,
            metrics=self.metrics,
            restart_delay=self.config.supervisor_restart_delay,
            max_restarts_per_minute=self.config.supervisor_max_restarts_per_minute,
            watchdog_interval=self.config.watchdog_interval,
        )
        self.supervisor.spawn()
        self._supervisor_task = asyncio.create_task(self.supervisor.run(), name='supervisor')
        self._reconcile_task = asyncio.create_task(self.reconcile_loop(), name='reconcile')
        logger.info("Risk manager started with %d cached positions", len(self.position_cache))

    async def stop(self, timeout: Optional[float] = None):
        """Signal the loop to finish its cycle; cancel only if it overruns ``timeout``."""
        if not self.running:
            return
        self.running = False
        if self._wake is not None:
            self._wake.set()
        timeout = timeout if timeout is not None else self.config.stop_timeout
        worker = self.supervisor.task if self.supervisor else None
        await join_with_timeout(worker, timeout, 'monitoring loop')
        await join_with_timeout(self._supervisor_task, timeout, 'supervisor')
        await join_with_timeout(self._reconcile_task, timeout, 'reconciliation')
        logger.info("Risk manager stopped")

    def is_alive(self) -> bool:
        return self.running and self.supervisor is not None and self.supervisor.is_alive()

    async def _sleep(self, interval: float):
        if self._wake is None:
            await asyncio.sleep(interval)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    def next_interval(self) -> float:
        if len(self.position_cache):
            return self.config.cycle_interval_active
        return self.config.cycle_interval_idle

    async def monitoring_loop(self):
        logger.info("Monitoring loop running")
        while self.running:
            await self.run_cycle()
            await self._sleep(self.next_interval())
        logger.info("Monitoring loop finished")

    async def reconcile_loop(self):
        while self.running:
            await self._sleep(self.config.reconcile_interval)
            if not self.running:
                break
            try:
                await self.reconcile()
            except Exception as e:
                logger.error("Reconciliation failed: %s", e)
                self.metrics.record_error('reconcile')

    # Cycle

    async def run_cycle(self) -> CycleReport:
        started = time.monotonic()
        report = CycleReport()
        positions = [p for p in self.position_cache.snapshot_all() if p.is_active]
        report.positions = len(positions)
        now_ts = time.time()
        now = datetime.fromtimestamp(now_ts, self.config.tz)

        if positions:
            await self._resolve_pnl(positions, now_ts, report)

        for position in positions:
            try:
                await self._process_position(position, now, report)
            except Exception as e:
                report.errors += 1
                logger.error("Risk check failed for %s: %s", position.id, e, exc_info=True)
                self.metrics.record_error(type(e).__name__)

        report.duration = time.monotonic() - started
        self.last_cycle_at = time.monotonic()
        self.metrics.record_cycle(report.duration, report.positions, report.cache_fetches, report.api_calls)
        self.metrics.update_breaker_states(self.breaker.snapshot())
        return report

    def _price_fresh(self, position: Position, now_ts: float) -> bool:
        if position.last_price_at is None:
            return False
        return now_ts - position.last_price_at <= self.config.pnl_staleness_threshold

    async def _resolve_pnl(self, positions: List[Position], now_ts: float, report: CycleReport):
        needs_fallback: Dict[str, List[Position]] = defaultdict(list)
        for position in positions:
            snapshot = self.pnl_cache.fetch(position.id)
            report.cache_fetches += 1
            if self.pnl_cache.is_fresh(snapshot, now_ts):
                if position.last_price_at is None or snapshot.timestamp > position.last_price_at:
                    position.apply_price(snapshot.last_price, snapshot.timestamp)
                position.peak_pnl_pct = max(position.peak_pnl_pct, snapshot.peak_pnl_pct)
                continue
            if self._price_fresh(position, now_ts):
                continue
            needs_fallback[position.segment].append(position)

        for segment, group in needs_fallback.items():
            prices = await self._fetch_fallback(segment, group, report)
            for position in group:
                price = prices.get(str(position.instrument_id))
                if price is None:
                    self._mark_stale(position, now_ts, report)
                    continue
                position.apply_price(price, now_ts)
                self.position_cache.update_price(position.instrument_id, price, segment=segment, timestamp=now_ts)
                snapshot = position.snapshot(now_ts)
                if snapshot is not None:
                    self.pnl_cache.store(position.id, snapshot)

    async def _fetch_fallback(self, segment: str, group: List[Position], report: CycleReport) -> Dict[str, float]:
        if self.quote_client is None:
            return {}
        key = f"quotes:{segment}"
        ids = [str(p.instrument_id) for p in group]
        try:
            prices = await self.breaker.call(key, self.quote_client.fetch_ltp, segment, ids)
        except CircuitOpenError:
            logger.debug("Fallback quotes for %s skipped: breaker open", segment)
            return {}
        except TransientIOError as e:
            report.api_calls += 1
            self.metrics.record_api_call(segment)
            logger.warning("Fallback quotes for %s failed: %s", segment, e)
            self.metrics.record_error('fallback_api')
            return {}
        report.api_calls += 1
        self.metrics.record_api_call(segment)
        return prices

    def _mark_stale(self, position: Position, now_ts: float, report: CycleReport):
        age = now_ts - position.last_price_at if position.last_price_at is not None else None
        err = DataStalenessError(position.id, age, self.config.pnl_staleness_threshold)
        logger.warning("%s; using last known values", err)
        report.stale.add(position.id)
        self.metrics.record_stale()
        self.metrics.record_error('stale_pnl')

    async def _process_position(self, position: Position, now: datetime, report: CycleReport):
        trailing = await self.trailing_engine.process(position, now)
        if trailing.exit is not None and self.config.trailing_pre_exit:
            outcome = await self.exit_engine.execute(position.id, trailing.exit.reason, trailing.exit.metadata)
            if outcome.executed:
                report.exits.append(position.id)
                return

        current = self.position_cache.get(position.id)
        if current is None or not current.is_active:
            return
        if current.bracket_fill and not position.bracket_fill:
            position.bracket_fill = current.bracket_fill

        underlying = self.underlying_monitor.evaluate(position) if self.underlying_monitor else None
        context = RuleContext.from_position(
            position, self.config, now, underlying=underlying, stale=position.id in report.stale
        )
        result = self.rule_engine.evaluate(context)
        if result.is_exit:
            outcome = await self.exit_engine.execute(position.id, result.reason, result.metadata)
            if outcome.executed:
                report.exits.append(position.id)

    # Order updates

    async def on_order_update(self, update: Dict[str, Any]) -> bool:
        """Record a broker fill of an attached stop or target leg."""
        status = str(update.get('status') or update.get('order_status') or '').lower()
        leg = _BRACKET_LEGS.get(str(update.get('leg') or update.get('leg_name') or '').lower())
        if status not in _FILLED_STATUSES or leg is None:
            return False

        position_id = update.get('position_id')
        order_ref = update.get('order_ref') or update.get('order_id')
        if not position_id and order_ref:
            position_id = self.position_cache.find_by_order_ref(str(order_ref))
        if not position_id:
            logger.debug("Order update for unknown position: %s", update)
            return False

        position_id = str(position_id)
        try:
            await self.store.mark_bracket_fill(position_id, leg)
        except Exception as e:
            logger.error("Could not persist %s fill for %s: %s", leg, position_id, e)
            self.metrics.record_error('order_update')
        if self.position_cache.update_fields(position_id, bracket_fill=leg) is None:
            return False
        logger.info("Broker reported %s fill for %s", leg, position_id)
        return True

    # Reconciliation

    async def reconcile(self) -> Dict[str, int]:
        """Bring the caches and feed subscriptions back in line with the store."""
        counts = {'cache': 0, 'pnl': 0, 'subscriptions': 0, 'evicted': 0, 'recovered': 0}
        await self._recover_exiting(counts)

        active = await self.store.list_active()
        for listed in active:
            if self.exit_engine.is_exiting(listed.id):
                continue
            if not self.position_cache.contains(listed.id):
                # An exit may have finished while earlier positions were awaited.
                position = await self.store.get(listed.id)
                if position is None or not position.is_active or self.exit_engine.is_exiting(listed.id):
                    continue
                self.position_cache.add(position)
                counts['cache'] += 1
            else:
                position = listed
            if self.pnl_cache.fetch(position.id) is None:
                snapshot = position.snapshot()
                if snapshot is not None:
                    self.pnl_cache.store(position.id, snapshot)
                    counts['pnl'] += 1
            if self.listener is not None:
                counts['subscriptions'] += await self._ensure_subscribed(position)

        await self._evict_finished(counts)
        self.pnl_cache.sweep(keep=self.position_cache.ids())
        if any(counts.values()):
            logger.info(
                "Reconciliation re-added %(cache)d positions, %(pnl)d PnL entries, %(subscriptions)d subscriptions; "
                "evicted %(evicted)d, recovered %(recovered)d",
                counts,
            )
        self._last_reconcile = time.monotonic()
        return counts

    async def _recover_exiting(self, counts: Dict[str, int]):
        for position in await self.store.list_by_status(PositionStatus.EXITING):
            if self.exit_engine.is_exiting(position.id):
                continue
            try:
                recovered = await self.exit_engine.recover(position)
            except Exception as e:
                logger.error("Could not recover stuck exit for %s: %s", position.id, e)
                self.metrics.record_error('exit_recovery')
                continue
            if recovered is not None:
                counts['recovered'] += 1

    async def _evict_finished(self, counts: Dict[str, int]):
        for position_id in self.position_cache.ids():
            if self.exit_engine.is_exiting(position_id):
                continue
            row = await self.store.get(position_id)
            if row is not None and not row.status.terminal:
                continue
            if self.exit_engine.is_exiting(position_id):
                continue
            self.position_cache.remove(position_id)
            self.pnl_cache.clear(position_id)
            counts['evicted'] += 1

    async def _ensure_subscribed(self, position: Position) -> int:
        added = 0
        targets = [(position.segment, str(position.instrument_id))]
        if position.underlying_segment and position.underlying_instrument_id:
            targets.append((position.underlying_segment, str(position.underlying_instrument_id)))
        for segment, instrument_id in targets:
            if not self.listener.is_subscribed(segment, instrument_id):
                await self.listener.subscribe(segment, instrument_id)
                added += 1
        return added

    # Health

    def health(self) -> Dict[str, Any]:
        stats = self.metrics.cycle_stats
        return {
            'running': self.is_alive(),
            'last_cycle_duration': stats.last_cycle_time,
            'active_position_count': len(self.position_cache),
            'circuit_breaker_state': self.breaker.overall_state(),
            'recent_error_count': self.metrics.recent_error_count(),
            'uptime': (time.monotonic() - self.started_at) if self.started_at and self.running else 0.0,
        }

    def cycle_metrics(self) -> Dict[str, Any]:
        return self.metrics.cycle_stats.as_dict()

    def reset_metrics(self):
        self.metrics.reset_metrics()
