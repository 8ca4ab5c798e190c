import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from api.metrics import MetricsCollector
from cache.pnl_cache import PnlCache
from cache.position_cache import PositionCache
from config.risk_config import RiskConfig, TrailingTier
from execution.router import OrderRouter
from .models import Position
from .rules import Exit, PeakDrawdownRule, RuleContext, peak_drawdown_rule


logger = logging.getLogger(__name__)


def tier_for(pnl_pct: float, tiers: Sequence[TrailingTier]) -> Optional[TrailingTier]:
    """Highest tier whose threshold the profit has reached."""
    selected = None
    for tier in tiers:
        if pnl_pct >= tier.threshold_pct:
            selected = tier
        else:
            break
    return selected


def stop_for_offset(entry_price: float, offset_pct: float, side: str) -> float:
    if side == 'short':
        return round(entry_price * (1 - offset_pct / 100.0), 2)
    return round(entry_price * (1 + offset_pct / 100.0), 2)


def improves(current_stop: Optional[float], new_stop: float, side: str) -> bool:
    if current_stop is None:
        return True
    if side == 'short':
        return new_stop < current_stop
    return new_stop > current_stop


@dataclass
class TrailingResult:
    position: Position
    peak_updated: bool = False
    stop_moved: bool = False
    new_stop: Optional[float] = None
    tier: Optional[TrailingTier] = None
    exit: Optional[Exit] = None


class TrailingEngine:
    """Per-cycle peak tracking and tiered broker-stop adjustment."""

    def __init__(
        self,
        config: RiskConfig,
        position_cache: PositionCache,
        pnl_cache: PnlCache,
        router: OrderRouter,
        metrics: Optional[MetricsCollector] = None,
        drawdown_rule: Optional[PeakDrawdownRule] = None,
    ):
        self.config = config
        self.position_cache = position_cache
        self.pnl_cache = pnl_cache
        self.router = router
        self.metrics = metrics or MetricsCollector()
        self.tiers = tuple(sorted(config.trailing_tier_table, key=lambda t: t.threshold_pct))
        self.drawdown_rule = drawdown_rule or peak_drawdown_rule(config)

    async def process(self, position: Position, now: Optional[datetime] = None) -> TrailingResult:
        result = TrailingResult(position=position)
        if not position.is_active or position.current_price is None:
            return result

        if position.pnl_pct > position.peak_pnl_pct:
            position.peak_pnl_pct = position.pnl_pct
            result.peak_updated = True
            self.position_cache.update_fields(position.id, peak_pnl_pct=position.peak_pnl_pct)
            self.pnl_cache.update_peak(position.id, position.peak_pnl_pct)

        await self._apply_tier(position, result)

        if self.drawdown_rule.enabled:
            context = RuleContext.from_position(position, self.config, now or datetime.now(self.config.tz))
            decision = self.drawdown_rule.evaluate(context)
            if decision.is_exit:
                result.exit = decision
        return result

    async def _apply_tier(self, position: Position, result: TrailingResult):
        tier = tier_for(position.pnl_pct, self.tiers)
        if tier is None:
            return
        result.tier = tier
        new_stop = stop_for_offset(position.entry_price, tier.sl_offset_pct, position.side)
        if not improves(position.stop_price, new_stop, position.side):
            return

        try:
            accepted = await self.router.modify_stop(position, new_stop)
        except Exception as e:
            logger.error("Stop move to %.2f failed for %s: %s", new_stop, position.id, e)
            self.metrics.record_error('stop_modify')
            return
        if not accepted:
            return

        logger.info(
            "Trailing stop for %s moved %s -> %.2f (tier %.0f%% => offset %+.0f%%)",
            position.id, position.stop_price, new_stop, tier.threshold_pct, tier.sl_offset_pct,
        )
        position.stop_price = new_stop
        position.sl_offset_pct = tier.sl_offset_pct
        self.position_cache.update_fields(position.id, stop_price=new_stop, sl_offset_pct=tier.sl_offset_pct)
        self.metrics.record_stop_adjustment()
        result.stop_moved = True
        result.new_stop = new_stop
