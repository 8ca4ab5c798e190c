import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Tuple

import numpy as np

from risk.models import Position, Tick


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnderlyingState:
    trend_score: Optional[float] = None
    bos_state: str = 'unknown'
    bos_direction: str = 'neutral'
    atr_trend: str = 'unknown'
    atr_ratio: Optional[float] = None
    ltp: Optional[float] = None


DEFAULT_STATE = UnderlyingState()


@dataclass
class Bar:
    start: float
    open: float
    high: float
    low: float
    close: float

    def update(self, price: float):
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price


def true_range(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> np.ndarray:
    prev_close = closes[:-1]
    high = highs[1:]
    low = lows[1:]
    return np.maximum.reduce([high - low, np.abs(high - prev_close), np.abs(low - prev_close)])


def average_true_range(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> Optional[float]:
    if len(closes) < 2:
        return None
    return float(np.mean(true_range(highs, lows, closes)))


def atr_snapshot(
    highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int = 14
) -> Tuple[Optional[float], Optional[float], str]:
    """Recent ATR against the ATR of the window before it."""
    if len(closes) < 2 * period + 1:
        return None, None, 'unknown'
    recent = slice(-(period + 1), None)
    previous = slice(-(2 * period + 1), -period)
    atr_now = average_true_range(highs[recent], lows[recent], closes[recent])
    atr_prev = average_true_range(highs[previous], lows[previous], closes[previous])
    if not atr_prev:
        return atr_now, None, 'unknown'
    ratio = atr_now / atr_prev
    if ratio < 0.85:
        trend = 'falling'
    elif ratio > 1.1:
        trend = 'rising'
    else:
        trend = 'flat'
    return atr_now, ratio, trend


def _wilder(values: np.ndarray, period: int) -> np.ndarray:
    out = np.empty(len(values) - period + 1, dtype=float)
    out[0] = values[:period].sum()
    for i in range(1, len(out)):
        out[i] = out[i - 1] - out[i - 1] / period + values[period + i - 1]
    return out


def adx(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int = 14) -> Optional[float]:
    """Average directional index in [0, 100]; None until 2*period+1 bars exist."""
    if len(closes) < 2 * period + 1:
        return None
    up_move = highs[1:] - highs[:-1]
    down_move = lows[:-1] - lows[1:]
    plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)
    minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)
    tr = true_range(highs, lows, closes)

    tr_s = _wilder(tr, period)
    plus_s = _wilder(plus_dm, period)
    minus_s = _wilder(minus_dm, period)
    with np.errstate(divide='ignore', invalid='ignore'):
        plus_di = np.where(tr_s > 0, 100.0 * plus_s / tr_s, 0.0)
        minus_di = np.where(tr_s > 0, 100.0 * minus_s / tr_s, 0.0)
        di_sum = plus_di + minus_di
        dx = np.where(di_sum > 0, 100.0 * np.abs(plus_di - minus_di) / di_sum, 0.0)
    if len(dx) < period:
        return None
    value = dx[:period].mean()
    for x in dx[period:]:
        value = (value * (period - 1) + x) / period
    return float(value)


def previous_swing(values: np.ndarray, lookback: int, kind: str) -> Optional[float]:
    """Most recent fractal swing high/low, excluding the bar being tested."""
    n = len(values)
    for i in range(n - 2 - lookback, lookback - 1, -1):
        window = values[i - lookback:i + lookback + 1]
        if kind == 'high' and values[i] == window.max():
            return float(values[i])
        if kind == 'low' and values[i] == window.min():
            return float(values[i])
    return None


def structure_state(
    highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, bias: str, lookback: int = 2
) -> Tuple[str, str]:
    if len(closes) < 2 * lookback + 2:
        return 'unknown', 'neutral'
    last_close = closes[-1]
    if bias == 'bearish':
        swing_high = previous_swing(highs, lookback, 'high')
        if swing_high is not None and last_close > swing_high:
            return 'broken', 'bullish'
        return 'intact', 'neutral'
    swing_low = previous_swing(lows, lookback, 'low')
    if swing_low is not None and last_close < swing_low:
        return 'broken', 'bearish'
    return 'intact', 'neutral'


class UnderlyingMonitor:
    """Builds bars from underlying ticks and derives trend/structure/ATR state."""

    def __init__(
        self,
        bar_seconds: float = 60.0,
        max_bars: int = 200,
        atr_period: int = 14,
        swing_lookback: int = 2,
        cache_ttl: float = 0.25,
    ):
        self.bar_seconds = bar_seconds
        self.max_bars = max_bars
        self.atr_period = atr_period
        self.swing_lookback = swing_lookback
        self.cache_ttl = cache_ttl
        self._bars: Dict[Tuple[str, str], Deque[Bar]] = {}
        self._cache: Dict[Tuple[str, str, str], Tuple[float, UnderlyingState]] = {}
        self._lock = threading.Lock()

    async def on_tick(self, tick: Tick):
        self.add_price(tick.segment, tick.instrument_id, tick.price, tick.timestamp)

    def add_price(self, segment: str, instrument_id: str, price: float, timestamp: Optional[float] = None):
        timestamp = timestamp if timestamp is not None else time.time()
        bucket = timestamp - (timestamp % self.bar_seconds)
        key = (segment, str(instrument_id))
        with self._lock:
            bars = self._bars.get(key)
            if bars is None:
                bars = self._bars[key] = deque(maxlen=self.max_bars)
            if bars and bars[-1].start == bucket:
                bars[-1].update(price)
            elif bars and bucket < bars[-1].start:
                return
            else:
                bars.append(Bar(bucket, price, price, price, price))

    def add_bar(self, segment: str, instrument_id: str, high: float, low: float, close: float,
                open_: Optional[float] = None, start: Optional[float] = None):
        key = (segment, str(instrument_id))
        with self._lock:
            bars = self._bars.setdefault(key, deque(maxlen=self.max_bars))
            if start is None:
                start = (bars[-1].start + self.bar_seconds) if bars else 0.0
            bars.append(Bar(start, open_ if open_ is not None else close, high, low, close))

    def bar_count(self, segment: str, instrument_id: str) -> int:
        with self._lock:
            return len(self._bars.get((segment, str(instrument_id)), ()))

    def _arrays(self, key: Tuple[str, str]):
        with self._lock:
            bars = list(self._bars.get(key, ()))
        highs = np.array([b.high for b in bars], dtype=float)
        lows = np.array([b.low for b in bars], dtype=float)
        closes = np.array([b.close for b in bars], dtype=float)
        return highs, lows, closes

    def evaluate(self, position: Position) -> Optional[UnderlyingState]:
        if not position.underlying_segment or not position.underlying_instrument_id:
            return None
        key = (position.underlying_segment, str(position.underlying_instrument_id))
        cache_key = key + (position.market_bias,)
        now = time.monotonic()
        cached = self._cache.get(cache_key)
        if cached and now - cached[0] < self.cache_ttl:
            return cached[1]
        try:
            state = self._compute(key, position.market_bias)
        except Exception as e:
            logger.error("Underlying state failed for %s: %s", key, e)
            state = DEFAULT_STATE
        self._cache[cache_key] = (now, state)
        return state

    def _compute(self, key: Tuple[str, str], bias: str) -> UnderlyingState:
        highs, lows, closes = self._arrays(key)
        if len(closes) == 0:
            return DEFAULT_STATE
        bos_state, bos_direction = structure_state(highs, lows, closes, bias, self.swing_lookback)
        _, atr_ratio, atr_trend = atr_snapshot(highs, lows, closes, self.atr_period)
        return UnderlyingState(
            trend_score=adx(highs, lows, closes, self.atr_period),
            bos_state=bos_state,
            bos_direction=bos_direction,
            atr_trend=atr_trend,
            atr_ratio=atr_ratio,
            ltp=float(closes[-1]),
        )

    def reset_cache(self):
        self._cache.clear()
