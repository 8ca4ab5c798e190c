"""Exit rules.

Each rule is an independent type exposing ``name``, ``priority``, ``enabled``
and ``evaluate(context) -> RuleResult``. Rules hold only their thresholds and
never mutate the context, so identical contexts always produce identical
results.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time as dtime
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, runtime_checkable

from config.risk_config import RiskConfig
from .models import Position, PositionStatus

if TYPE_CHECKING:
    from analytics.underlying import UnderlyingState


EPSILON = 1e-9


@dataclass(frozen=True)
class RuleResult:
    @property
    def is_exit(self) -> bool:
        return False


@dataclass(frozen=True)
class Exit(RuleResult):
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_exit(self) -> bool:
        return True


@dataclass(frozen=True)
class NoAction(RuleResult):
    pass


@dataclass(frozen=True)
class Skip(RuleResult):
    note: Optional[str] = None


NO_ACTION = NoAction()
SKIP = Skip()


@dataclass(frozen=True)
class RuleContext:
    """Read-only projection of a position evaluated at ``now``."""

    position_id: str
    segment: str
    instrument_id: str
    side: str
    quantity: float
    entry_price: float
    status: PositionStatus
    now: datetime
    current_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    peak_pnl_pct: float = 0.0
    high_water_mark: float = 0.0
    stop_price: Optional[float] = None
    target_price: Optional[float] = None
    sl_offset_pct: Optional[float] = None
    bracket_fill: Optional[str] = None
    market_bias: str = "bullish"
    stale: bool = False
    underlying: Optional['UnderlyingState'] = None
    config: RiskConfig = field(default_factory=RiskConfig)

    @classmethod
    def from_position(
        cls,
        position: Position,
        config: RiskConfig,
        now: datetime,
        underlying: Optional['UnderlyingState'] = None,
        stale: bool = False,
    ) -> 'RuleContext':
        has_price = position.current_price is not None
        return cls(
            position_id=position.id,
            segment=position.segment,
            instrument_id=str(position.instrument_id),
            side=position.side,
            quantity=position.quantity,
            entry_price=position.entry_price,
            status=position.status,
            now=now,
            current_price=position.current_price,
            pnl=position.pnl if has_price else None,
            pnl_pct=position.pnl_pct if has_price else None,
            peak_pnl_pct=position.peak_pnl_pct,
            high_water_mark=position.high_water_mark,
            stop_price=position.stop_price,
            target_price=position.target_price,
            sl_offset_pct=position.sl_offset_pct,
            bracket_fill=position.bracket_fill,
            market_bias=position.market_bias,
            stale=stale,
            underlying=underlying,
            config=config,
        )

    @property
    def active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    @property
    def effective_peak_pct(self) -> float:
        if self.pnl_pct is None:
            return self.peak_pnl_pct
        return max(self.peak_pnl_pct, self.pnl_pct)


@runtime_checkable
class Rule(Protocol):
    name: str
    priority: int
    enabled: bool

    def evaluate(self, context: RuleContext) -> RuleResult:
        ...


def _hhmm(value: dtime) -> str:
    return value.strftime('%H:%M')


@dataclass(frozen=True)
class SessionEndRule:
    session_exit_at: dtime = dtime(15, 15)
    name: str = 'session_end'
    priority: int = 10
    enabled: bool = True

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.now.time() < self.session_exit_at:
            return NO_ACTION
        deadline = _hhmm(self.session_exit_at)
        return Exit(
            f"session end (deadline {deadline})",
            {'session_check': True, 'deadline': deadline, 'pnl_pct': context.pnl_pct},
        )


@dataclass(frozen=True)
class StopLossRule:
    sl_pct: Optional[float] = None
    name: str = 'stop_loss'
    priority: int = 20
    enabled: bool = True

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.pnl_pct is None or not self.sl_pct:
            return SKIP
        if context.pnl_pct <= -self.sl_pct:
            return Exit(
                f"SL HIT {context.pnl_pct:.2f}%",
                {'pnl_pct': context.pnl_pct, 'sl_pct': self.sl_pct},
            )
        return NO_ACTION


@dataclass(frozen=True)
class BracketLimitRule:
    name: str = 'bracket_limit'
    priority: int = 25
    enabled: bool = True

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.bracket_fill in ('stop_loss', 'take_profit'):
            label = 'SL HIT' if context.bracket_fill == 'stop_loss' else 'TP HIT'
            return Exit(label, {'limit_type': context.bracket_fill, 'broker_filled': True})

        if context.current_price is None:
            return SKIP
        if context.stop_price is None and context.target_price is None:
            return SKIP

        price = context.current_price
        long_side = context.side == 'long'
        if context.stop_price is not None:
            sl_hit = price <= context.stop_price if long_side else price >= context.stop_price
            if sl_hit:
                return Exit('SL HIT', {'limit_type': 'stop_loss', 'stop_price': context.stop_price, 'ltp': price})
        if context.target_price is not None:
            tp_hit = price >= context.target_price if long_side else price <= context.target_price
            if tp_hit:
                return Exit('TP HIT', {'limit_type': 'take_profit', 'target_price': context.target_price, 'ltp': price})
        return NO_ACTION


@dataclass(frozen=True)
class TakeProfitRule:
    tp_pct: Optional[float] = None
    name: str = 'take_profit'
    priority: int = 30
    enabled: bool = True

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.pnl_pct is None or not self.tp_pct:
            return SKIP
        if context.pnl_pct >= self.tp_pct:
            return Exit(
                f"TP HIT {context.pnl_pct:.2f}%",
                {'pnl_pct': context.pnl_pct, 'tp_pct': self.tp_pct},
            )
        return NO_ACTION


@dataclass(frozen=True)
class SecureProfitRule:
    """Tighter drawdown-from-peak exit once rupee profit clears a threshold."""

    threshold: float = 1000.0
    drawdown_pct: float = 3.0
    name: str = 'secure_profit'
    priority: int = 35
    enabled: bool = True

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.pnl is None or context.pnl_pct is None:
            return SKIP
        if context.pnl <= 0 or not self.threshold:
            return SKIP
        if context.pnl < self.threshold:
            return NO_ACTION
        peak = context.effective_peak_pct
        drawdown = peak - context.pnl_pct
        if drawdown + EPSILON >= self.drawdown_pct:
            return Exit(
                f"secure_profit_exit (profit: ₹{context.pnl:.2f}, drawdown: {drawdown:.2f}% from peak {peak:.2f}%)",
                {'pnl': context.pnl, 'drawdown_pct': drawdown, 'peak_pnl_pct': peak},
            )
        return NO_ACTION


@dataclass(frozen=True)
class TimeBasedExitRule:
    exit_at: Optional[dtime] = None
    market_close_at: dtime = dtime(15, 30)
    min_profit: float = 0.0
    name: str = 'time_based_exit'
    priority: int = 40
    enabled: bool = True

    def evaluate(self, context: RuleContext) -> RuleResult:
        if self.exit_at is None:
            return SKIP
        now = context.now.time()
        if now < self.exit_at or now >= self.market_close_at:
            return NO_ACTION
        if context.pnl is None:
            return SKIP
        if context.pnl < 0:
            return NO_ACTION
        if self.min_profit > 0 and context.pnl < self.min_profit:
            return NO_ACTION
        exit_time = _hhmm(self.exit_at)
        return Exit(f"time-based exit ({exit_time})", {'exit_time': exit_time, 'pnl': context.pnl})


@dataclass(frozen=True)
class PeakDrawdownRule:
    """Drawdown from peak profit, armed only once the activation gate is met."""

    drawdown_pct: float = 5.0
    activation_profit_pct: float = 25.0
    activation_sl_offset_pct: Optional[float] = None
    name: str = 'peak_drawdown'
    priority: int = 45
    enabled: bool = True

    def activated(self, context: RuleContext) -> bool:
        if context.effective_peak_pct + EPSILON < self.activation_profit_pct:
            return False
        if self.activation_sl_offset_pct is not None:
            offset = context.sl_offset_pct
            if offset is None or offset + EPSILON < self.activation_sl_offset_pct:
                return False
        return True

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.pnl_pct is None:
            return SKIP
        peak = context.effective_peak_pct
        if peak <= 0 or not self.drawdown_pct:
            return SKIP
        if not self.activated(context):
            return NO_ACTION
        drawdown = peak - context.pnl_pct
        if drawdown + EPSILON >= self.drawdown_pct:
            return Exit(
                f"peak_drawdown_exit (drawdown: {drawdown:.2f}%, peak: {peak:.2f}%)",
                {'peak_pnl_pct': peak, 'pnl_pct': context.pnl_pct, 'drawdown_pct': drawdown},
            )
        return NO_ACTION


@dataclass(frozen=True)
class TrailingStopRule:
    """Legacy trailing exit on the drop from the rupee high-water mark."""

    activation_pct: float = 10.0
    exit_drop_pct: float = 20.0
    name: str = 'trailing_stop'
    priority: int = 50
    enabled: bool = True

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.pnl_pct is None or context.pnl is None:
            return SKIP
        if context.pnl_pct < self.activation_pct:
            return SKIP
        hwm = context.high_water_mark
        if context.pnl <= 0 or hwm <= 0 or not self.exit_drop_pct:
            return SKIP
        drop = (hwm - context.pnl) / hwm
        if drop + EPSILON >= self.exit_drop_pct / 100.0:
            return Exit('TRAILING STOP', {'pnl': context.pnl, 'hwm': hwm, 'drop_pct': round(drop * 100.0, 4)})
        return NO_ACTION


@dataclass(frozen=True)
class UnderlyingExitRule:
    trend_score_threshold: float = 10.0
    atr_ratio_threshold: float = 0.65
    name: str = 'underlying_exit'
    priority: int = 60
    enabled: bool = True

    def evaluate(self, context: RuleContext) -> RuleResult:
        state = context.underlying
        if state is None:
            return SKIP

        if state.bos_state == 'broken' and state.bos_direction not in ('neutral', context.market_bias):
            return Exit('underlying_structure_break', {
                'bos_direction': state.bos_direction,
                'position_bias': context.market_bias,
            })

        if state.trend_score is not None and state.trend_score < self.trend_score_threshold:
            return Exit('underlying_trend_weak', {
                'trend_score': state.trend_score,
                'threshold': self.trend_score_threshold,
            })

        if state.atr_trend == 'falling' and state.atr_ratio is not None and state.atr_ratio < self.atr_ratio_threshold:
            return Exit('underlying_atr_collapse', {
                'atr_ratio': state.atr_ratio,
                'threshold': self.atr_ratio_threshold,
            })
        return NO_ACTION


def standard_rules(config: RiskConfig):
    """The standard rule set configured from ``config``; disabled rules are flagged, not dropped."""
    return [
        SessionEndRule(
            session_exit_at=config.session_exit_at,
            enabled=config.rule_enabled('session_end'),
        ),
        StopLossRule(
            sl_pct=config.sl_pct,
            enabled=config.rule_enabled('stop_loss'),
        ),
        BracketLimitRule(enabled=config.rule_enabled('bracket_limit')),
        TakeProfitRule(
            tp_pct=config.tp_pct,
            enabled=config.rule_enabled('take_profit'),
        ),
        SecureProfitRule(
            threshold=config.secure_profit_threshold,
            drawdown_pct=config.secure_profit_drawdown_pct,
            enabled=config.rule_enabled('secure_profit'),
        ),
        TimeBasedExitRule(
            exit_at=config.time_exit_at,
            market_close_at=config.market_close_at,
            min_profit=config.min_profit_for_time_exit,
            enabled=config.rule_enabled('time_based_exit'),
        ),
        peak_drawdown_rule(config),
        TrailingStopRule(
            activation_pct=config.trailing_activation_pct,
            exit_drop_pct=config.trailing_exit_drop_pct,
            enabled=config.rule_enabled('trailing_stop'),
        ),
        UnderlyingExitRule(
            trend_score_threshold=config.underlying_trend_score_threshold,
            atr_ratio_threshold=config.underlying_atr_ratio_threshold,
            enabled=config.underlying_exit_enabled and config.rule_enabled('underlying_exit'),
        ),
    ]


def peak_drawdown_rule(config: RiskConfig) -> PeakDrawdownRule:
    return PeakDrawdownRule(
        drawdown_pct=config.peak_drawdown_pct,
        activation_profit_pct=config.peak_drawdown_activation_profit_pct,
        activation_sl_offset_pct=config.peak_drawdown_activation_sl_offset_pct,
        enabled=config.rule_enabled('peak_drawdown'),
    )
