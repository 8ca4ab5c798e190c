import sys

sys.path.insert(0, '.')

import asyncio

import numpy as np
import pytest

from analytics.underlying import (
    UnderlyingMonitor,
    adx,
    atr_snapshot,
    average_true_range,
    structure_state,
)
from risk.models import Position, Tick


def _series(closes, spread):
    closes = np.array(closes, dtype=float)
    spread = np.broadcast_to(np.array(spread, dtype=float), closes.shape)
    return closes + spread, closes - spread, closes


def test_average_true_range_uses_previous_close():
    highs = np.array([10.0, 12.0, 11.0])
    lows = np.array([9.0, 10.5, 8.0])
    closes = np.array([9.5, 11.0, 9.0])
    # true ranges: max(1.5, 2.5, 1.0) = 2.5 and max(3.0, 0.0, 3.0) = 3.0
    assert average_true_range(highs, lows, closes) == pytest.approx(2.75)


def test_atr_ratio_detects_collapsing_ranges():
    closes = [100.0] * 29
    spread = [2.0] * 15 + [0.5] * 14
    highs, lows, closes = _series(closes, spread)
    _, ratio, trend = atr_snapshot(highs, lows, closes, period=14)
    assert trend == 'falling'
    assert ratio < 0.65


def test_atr_needs_two_windows():
    highs, lows, closes = _series([100.0] * 10, 1.0)
    assert atr_snapshot(highs, lows, closes, period=14) == (None, None, 'unknown')


def test_adx_strong_for_steady_trend_and_weak_for_chop():
    trend = _series(np.arange(100.0, 140.0), 0.5)
    chop = _series([100.0 + (1.0 if i % 2 else -1.0) for i in range(40)], 0.5)
    assert adx(*trend, period=14) > 50.0
    assert adx(*chop, period=14) < 20.0
    assert adx(*_series([100.0] * 5, 0.5), period=14) is None


def test_structure_break_against_bullish_bias():
    closes = [100, 101, 102, 99, 103, 104, 103, 105, 106, 98]
    highs, lows, closes = _series(closes, 0.5)
    assert structure_state(highs, lows, closes, 'bullish') == ('broken', 'bearish')
    assert structure_state(highs, lows, closes, 'bearish') == ('intact', 'neutral')


def test_monitor_builds_bars_and_evaluates_position():
    monitor = UnderlyingMonitor(bar_seconds=60, atr_period=14, cache_ttl=0.0)
    position = Position(
        'NSE_FNO', '43120', 'long', 50, 100.0, option_type='CE',
        underlying_segment='IDX_I', underlying_instrument_id='13',
    )

    async def feed():
        for i in range(40):
            await monitor.on_tick(Tick('IDX_I', '13', 22000.0 + i * 10, timestamp=i * 60.0))
            await monitor.on_tick(Tick('IDX_I', '13', 22004.0 + i * 10, timestamp=i * 60.0 + 30))

    asyncio.run(feed())
    assert monitor.bar_count('IDX_I', '13') == 40
    state = monitor.evaluate(position)
    assert state.ltp == 22394.0
    assert state.trend_score > 50.0
    assert state.bos_state == 'intact'


def test_monitor_ignores_positions_without_underlying():
    monitor = UnderlyingMonitor()
    assert monitor.evaluate(Position('NSE_FNO', '43120', 'long', 50, 100.0)) is None
