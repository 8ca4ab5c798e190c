import asyncio
import logging
from typing import Optional

from analytics.underlying import UnderlyingMonitor
from api.metrics import MetricsCollector, start_metrics_server
from cache.pnl_cache import PnlCache
from cache.position_cache import PositionCache
from config import config, load_risk_config
from execution.router import OrderRouter
from execution.simulators.paper import PaperOrderRouter
from execution.transports.broker import BrokerOrderRouter
from ingest.quote_client import QuoteClient
from ingest.tick_listener import TickListener
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.lifecycle import register_position
from orchestration.persistence import InMemoryPositionStore, PositionStore, PostgresPositionStore
from risk.circuit_breaker import CircuitBreaker
from risk.exit_engine import ExitEngine
from risk.models import Position
from risk.risk_manager import RiskManager
from risk.rule_engine import RuleEngine
from risk.trailing import TrailingEngine


logger = logging.getLogger(__name__)


class RiskService:
    """Wire feed, caches, engines and the monitoring loop from configuration."""

    def __init__(self, config_obj=None, store: Optional[PositionStore] = None,
                 router: Optional[OrderRouter] = None, metrics: Optional[MetricsCollector] = None):
        self.config = config_obj or config
        self.service_cfg = self.config.section('service')
        self.monitoring_cfg = self.config.section('monitoring')
        self.risk_config = load_risk_config(self.config)

        self.metrics = metrics or MetricsCollector(recent_error_window=self.risk_config.recent_error_window)
        self.store = store or self._build_store()
        self.router = router or self._build_router()
        self.position_cache = PositionCache()
        self.pnl_cache = PnlCache(
            self.store,
            ttl=self.risk_config.pnl_cache_ttl,
            sync_interval=self.risk_config.pnl_sync_interval,
            staleness_threshold=self.risk_config.pnl_staleness_threshold,
        )
        self.breaker = CircuitBreaker(
            threshold=self.risk_config.circuit_breaker_failure_threshold,
            cooldown=self.risk_config.circuit_breaker_cooldown,
        )

        quotes_cfg = self.config.section('quotes')
        self.quote_client = QuoteClient.from_config(quotes_cfg) if quotes_cfg else None

        underlying_cfg = self.config.section('underlying')
        self.underlying_monitor = UnderlyingMonitor(
            bar_seconds=float(underlying_cfg.get('bar_seconds', 60)),
            max_bars=int(underlying_cfg.get('max_bars', 200)),
            atr_period=int(underlying_cfg.get('atr_period', 14)),
            swing_lookback=int(underlying_cfg.get('swing_lookback', 2)),
            cache_ttl=float(underlying_cfg.get('cache_ttl_s', 0.25)),
        )

        self.listener = TickListener.from_config(
            self.config.section('feed'),
            self.position_cache,
            self.pnl_cache,
            metrics=self.metrics,
            flush_interval=self.risk_config.pnl_flush_interval,
        )
        self.listener.register_handler('tick', self.underlying_monitor.on_tick)

        self.exit_engine = ExitEngine(
            self.store,
            self.router,
            self.position_cache,
            self.pnl_cache,
            self.breaker,
            metrics=self.metrics,
            unsubscribe=self.listener.unsubscribe,
            discard_pending=self.listener.discard_pending,
        )
        self.trailing_engine = TrailingEngine(
            self.risk_config, self.position_cache, self.pnl_cache, self.router, metrics=self.metrics
        )
        self.rule_engine = RuleEngine.from_config(
            self.risk_config, on_rule_error=lambda rule, exc: self.metrics.record_rule_error(rule.name)
        )
        self.risk_manager = RiskManager(
            self.risk_config,
            self.store,
            self.position_cache,
            self.pnl_cache,
            self.breaker,
            self.rule_engine,
            self.trailing_engine,
            self.exit_engine,
            self.metrics,
            quote_client=self.quote_client,
            underlying_monitor=self.underlying_monitor,
            listener=self.listener,
        )
        self.listener.register_handler('order_update', self.risk_manager.on_order_update)
        self.running = False

    def _build_store(self) -> PositionStore:
        if self.service_cfg.get('store', 'memory') == 'postgres':
            return PostgresPositionStore(self.config.section('database'))
        return InMemoryPositionStore()

    def _build_router(self) -> OrderRouter:
        if self.service_cfg.get('paper_mode', True):
            logger.info("Paper mode: exits are simulated")
            return PaperOrderRouter()
        return BrokerOrderRouter.from_config(self.config.section('broker'))

    async def register(self, position: Position) -> Position:
        return await register_position(
            position, self.store, self.position_cache, self.pnl_cache, listener=self.listener
        )

    async def start(self):
        self.running = True
        await self.store.initialize()

        start_metrics_server(
            int(self.monitoring_cfg.get('prometheus_port', 9108)),
            self.metrics.registry,
            port_scan_limit=int(self.monitoring_cfg.get('prometheus_port_scan', 0)),
            port_file=self.monitoring_cfg.get('metrics_port_file'),
        )

        await self.risk_manager.start()
        tasks = [asyncio.create_task(self.listener.start(), name='feed')]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await self.risk_manager.stop()
        await self.listener.stop()
        await self.listener.flush()
        if self.quote_client is not None:
            await self.quote_client.close()
        await self.router.close()
        await self.store.close()
        logger.info("Risk service stopped")


async def main():
    service = RiskService(config)
    try:
        await service.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Risk service shutting down on interrupt")
        await service.stop()


if __name__ == "__main__":
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    asyncio.run(main())
