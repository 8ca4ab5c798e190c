import sys

sys.path.insert(0, '.')

from datetime import datetime, time as dtime

import pytest

from analytics.underlying import UnderlyingState
from config.risk_config import RiskConfig
from risk.models import Position, PositionStatus
from risk.rule_engine import RuleEngine
from risk.rules import (
    NO_ACTION,
    SKIP,
    BracketLimitRule,
    Exit,
    PeakDrawdownRule,
    RuleContext,
    SecureProfitRule,
    SessionEndRule,
    StopLossRule,
    TakeProfitRule,
    TimeBasedExitRule,
    TrailingStopRule,
    UnderlyingExitRule,
)


MORNING = datetime(2024, 1, 2, 10, 0)


def _position(entry=100.0, price=None, side='long', quantity=1, **kwargs):
    position = Position('NSE_FNO', '43120', side, quantity, entry, symbol='NIFTY 22000 CE', **kwargs)
    if price is not None:
        position.apply_price(price, 1_700_000_000.0)
    return position


def _context(position, now=MORNING, config=None, **kwargs):
    return RuleContext.from_position(position, config or RiskConfig(), now, **kwargs)


class SpyRule:
    def __init__(self, name='spy', priority=99):
        self.name = name
        self.priority = priority
        self.enabled = True
        self.calls = 0

    def evaluate(self, context):
        self.calls += 1
        return NO_ACTION


class BoomRule:
    name = 'boom'
    priority = 5
    enabled = True

    def evaluate(self, context):
        raise RuntimeError("bad rule")


def test_stop_loss_reason_carries_pnl_pct():
    engine = RuleEngine.from_config(RiskConfig(sl_pct=2.0, tp_pct=60.0))
    result = engine.evaluate(_context(_position(price=96.0)))
    assert isinstance(result, Exit)
    assert result.reason == "SL HIT -4.00%"


def test_session_end_wins_over_take_profit_and_stops_evaluation():
    spy = SpyRule()
    engine = RuleEngine([TakeProfitRule(tp_pct=5.0), spy, SessionEndRule(session_exit_at=dtime(15, 15))])
    result = engine.evaluate(_context(_position(price=110.0), now=datetime(2024, 1, 2, 15, 20)))
    assert result.reason == "session end (deadline 15:15)"
    assert result.metadata['session_check'] is True
    assert spy.calls == 0


def test_take_profit_before_session_end():
    result = TakeProfitRule(tp_pct=5.0).evaluate(_context(_position(price=110.0)))
    assert result.reason == "TP HIT 10.00%"


def test_rules_skip_without_price():
    context = _context(_position())
    assert StopLossRule(sl_pct=2.0).evaluate(context) == SKIP
    assert TakeProfitRule(tp_pct=5.0).evaluate(context) == SKIP
    assert PeakDrawdownRule().evaluate(context) == SKIP


@pytest.mark.parametrize("activation,expected_exit", [(25.0, True), (30.0, False)])
def test_peak_drawdown_activation_gate(activation, expected_exit):
    position = _position(price=122.0)
    position.peak_pnl_pct = 28.0
    rule = PeakDrawdownRule(drawdown_pct=5.0, activation_profit_pct=activation)
    result = rule.evaluate(_context(position))
    if expected_exit:
        assert result.reason == "peak_drawdown_exit (drawdown: 6.00%, peak: 28.00%)"
    else:
        assert result == NO_ACTION


def test_peak_drawdown_requires_sl_offset_when_configured():
    position = _position(price=122.0)
    position.peak_pnl_pct = 28.0
    rule = PeakDrawdownRule(drawdown_pct=5.0, activation_profit_pct=25.0, activation_sl_offset_pct=10.0)
    assert rule.evaluate(_context(position)) == NO_ACTION
    position.sl_offset_pct = 10.0
    assert rule.evaluate(_context(position)).is_exit


@pytest.mark.parametrize("price,peak,exits", [
    (112.0, 16.0, True),
    (112.0, 13.0, False),
    (105.0, 20.0, False),
])
def test_secure_profit(price, peak, exits):
    position = _position(price=price, quantity=100)
    position.peak_pnl_pct = peak
    result = SecureProfitRule(threshold=1000.0, drawdown_pct=3.0).evaluate(_context(position))
    assert result.is_exit is exits
    if exits:
        assert result.reason.startswith("secure_profit_exit")


@pytest.mark.parametrize("now,price,expected", [
    (datetime(2024, 1, 2, 15, 25), 105.0, "exit"),
    (datetime(2024, 1, 2, 15, 10), 105.0, "no_action"),
    (datetime(2024, 1, 2, 15, 35), 105.0, "no_action"),
    (datetime(2024, 1, 2, 15, 25), 95.0, "no_action"),
])
def test_time_based_exit_window(now, price, expected):
    rule = TimeBasedExitRule(exit_at=dtime(15, 20), market_close_at=dtime(15, 30))
    result = rule.evaluate(_context(_position(price=price), now=now))
    if expected == "exit":
        assert result.reason == "time-based exit (15:20)"
    else:
        assert result == NO_ACTION


def test_time_based_exit_respects_min_profit():
    rule = TimeBasedExitRule(exit_at=dtime(15, 20), min_profit=10.0)
    context = _context(_position(price=105.0), now=datetime(2024, 1, 2, 15, 21))
    assert rule.evaluate(context) == NO_ACTION
    assert TimeBasedExitRule().evaluate(context) == SKIP


def test_bracket_broker_fill_skips_submission():
    position = _position(price=100.0, bracket_fill='stop_loss')
    result = BracketLimitRule().evaluate(_context(position))
    assert result.reason == 'SL HIT'
    assert result.metadata['broker_filled'] is True


@pytest.mark.parametrize("side,price,stop,target,reason", [
    ('long', 94.0, 95.0, 130.0, 'SL HIT'),
    ('long', 131.0, 95.0, 130.0, 'TP HIT'),
    ('short', 106.0, 105.0, 80.0, 'SL HIT'),
    ('short', 79.0, 105.0, 80.0, 'TP HIT'),
])
def test_bracket_price_crossing(side, price, stop, target, reason):
    position = _position(price=price, side=side, stop_price=stop, target_price=target)
    result = BracketLimitRule().evaluate(_context(position))
    assert result.reason == reason
    assert 'broker_filled' not in result.metadata


def test_trailing_stop_on_drop_from_high_water_mark():
    position = _position(price=120.0, quantity=10)
    rule = TrailingStopRule(activation_pct=10.0, exit_drop_pct=20.0)
    position.apply_price(117.0)
    assert rule.evaluate(_context(position)) == NO_ACTION
    position.apply_price(115.0)
    result = rule.evaluate(_context(position))
    assert result.reason == 'TRAILING STOP'
    assert result.metadata['hwm'] == pytest.approx(200.0)


@pytest.mark.parametrize("state,reason", [
    (UnderlyingState(bos_state='broken', bos_direction='bearish'), 'underlying_structure_break'),
    (UnderlyingState(trend_score=5.0, bos_state='intact'), 'underlying_trend_weak'),
    (UnderlyingState(trend_score=30.0, atr_trend='falling', atr_ratio=0.5), 'underlying_atr_collapse'),
])
def test_underlying_exit(state, reason):
    position = _position(price=100.0, option_type='CE')
    result = UnderlyingExitRule().evaluate(_context(position, underlying=state))
    assert result.reason == reason


def test_underlying_break_in_position_direction_is_ignored():
    position = _position(price=100.0, option_type='PE')
    state = UnderlyingState(trend_score=30.0, bos_state='broken', bos_direction='bearish')
    assert UnderlyingExitRule().evaluate(_context(position, underlying=state)) == NO_ACTION
    assert UnderlyingExitRule().evaluate(_context(position)) == SKIP


def test_raising_rule_is_skipped_and_reported():
    errors = []
    engine = RuleEngine(
        [BoomRule(), TakeProfitRule(tp_pct=5.0)],
        on_rule_error=lambda rule, exc: errors.append(rule.name),
    )
    result = engine.evaluate(_context(_position(price=110.0)))
    assert result.reason == "TP HIT 10.00%"
    assert errors == ['boom']


def test_disabled_rule_is_not_registered():
    engine = RuleEngine.from_config(RiskConfig(sl_pct=2.0, disabled_rules=('stop_loss',)))
    assert engine.find_rule('stop_loss') is None
    assert engine.evaluate(_context(_position(price=50.0))) == NO_ACTION


def test_rules_sorted_by_priority_with_stable_ties():
    first = SpyRule('first', priority=20)
    second = SpyRule('second', priority=20)
    engine = RuleEngine([SpyRule('late', priority=90), first, second, SessionEndRule()])
    assert [rule.name for rule in engine.rules] == ['session_end', 'first', 'second', 'late']


def test_evaluation_is_deterministic():
    engine = RuleEngine.from_config(RiskConfig(sl_pct=2.0, tp_pct=60.0))
    context = _context(_position(price=96.0))
    assert engine.evaluate(context) == engine.evaluate(context)


def test_inactive_position_is_skipped():
    position = _position(price=96.0)
    position.status = PositionStatus.EXITING
    engine = RuleEngine.from_config(RiskConfig(sl_pct=2.0))
    assert engine.evaluate(_context(position)) == SKIP
