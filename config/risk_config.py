"""Typed risk configuration, validated once at startup."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import time as dtime
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from risk.errors import FatalConfigError


REQUIRED_KEYS = ('sl_pct', 'tp_pct')


@dataclass(frozen=True)
class TrailingTier:
    threshold_pct: float
    sl_offset_pct: float


DEFAULT_TIERS: Tuple[TrailingTier, ...] = (
    TrailingTier(5.0, -15.0),
    TrailingTier(10.0, -5.0),
    TrailingTier(15.0, 0.0),
    TrailingTier(25.0, 10.0),
    TrailingTier(40.0, 20.0),
    TrailingTier(60.0, 30.0),
    TrailingTier(80.0, 40.0),
    TrailingTier(120.0, 60.0),
)


@dataclass(frozen=True)
class RiskConfig:
    sl_pct: Optional[float] = 30.0
    tp_pct: Optional[float] = 60.0

    peak_drawdown_pct: float = 5.0
    peak_drawdown_activation_profit_pct: float = 25.0
    peak_drawdown_activation_sl_offset_pct: Optional[float] = None

    secure_profit_threshold: float = 1000.0
    secure_profit_drawdown_pct: float = 3.0

    session_exit_at: dtime = dtime(15, 15)
    market_close_at: dtime = dtime(15, 30)
    timezone: str = 'Asia/Kolkata'
    time_exit_at: Optional[dtime] = None
    min_profit_for_time_exit: float = 0.0

    trailing_tier_table: Tuple[TrailingTier, ...] = DEFAULT_TIERS
    trailing_activation_pct: float = 10.0
    trailing_exit_drop_pct: float = 20.0
    trailing_pre_exit: bool = False

    underlying_exit_enabled: bool = True
    underlying_trend_score_threshold: float = 10.0
    underlying_atr_ratio_threshold: float = 0.65

    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_cooldown: float = 60.0

    cycle_interval_active: float = 1.0
    cycle_interval_idle: float = 10.0
    pnl_staleness_threshold: float = 30.0
    pnl_sync_interval: float = 30.0
    pnl_flush_interval: float = 0.25
    pnl_cache_ttl: float = 6 * 3600.0
    reconcile_interval: float = 5.0
    stop_timeout: float = 5.0
    watchdog_interval: float = 10.0
    supervisor_restart_delay: float = 1.0
    supervisor_max_restarts_per_minute: int = 10
    recent_error_window: float = 300.0

    disabled_rules: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def rule_enabled(self, name: str) -> bool:
        return name not in self.disabled_rules

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]], require: Iterable[str] = REQUIRED_KEYS) -> 'RiskConfig':
        data = dict(raw or {})
        missing = [key for key in require if key not in data]
        if missing:
            raise FatalConfigError(f"Missing required risk configuration: {', '.join(missing)}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise FatalConfigError(f"Unknown risk configuration keys: {', '.join(unknown)}")

        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            values[f.name] = _coerce(f.name, data[f.name])

        cfg = cls(**values)
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        for name in ('cycle_interval_active', 'cycle_interval_idle', 'pnl_staleness_threshold',
                     'pnl_sync_interval', 'pnl_flush_interval', 'pnl_cache_ttl', 'reconcile_interval',
                     'stop_timeout', 'watchdog_interval', 'circuit_breaker_cooldown'):
            if getattr(self, name) <= 0:
                raise FatalConfigError(f"risk.{name} must be positive")
        if self.circuit_breaker_failure_threshold < 1:
            raise FatalConfigError("risk.circuit_breaker_failure_threshold must be at least 1")
        if self.supervisor_max_restarts_per_minute < 1:
            raise FatalConfigError("risk.supervisor_max_restarts_per_minute must be at least 1")
        for name in ('sl_pct', 'tp_pct'):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise FatalConfigError(f"risk.{name} must not be negative")
        thresholds = [tier.threshold_pct for tier in self.trailing_tier_table]
        if thresholds != sorted(thresholds) or len(set(thresholds)) != len(thresholds):
            raise FatalConfigError("risk.trailing_tier_table thresholds must be strictly ascending")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise FatalConfigError(f"Unknown timezone {self.timezone!r}") from exc


_TIME_FIELDS = {'session_exit_at', 'market_close_at', 'time_exit_at'}
_INT_FIELDS = {'circuit_breaker_failure_threshold', 'supervisor_max_restarts_per_minute'}
_BOOL_FIELDS = {'trailing_pre_exit', 'underlying_exit_enabled'}
_OPTIONAL_FLOATS = {'sl_pct', 'tp_pct', 'peak_drawdown_activation_sl_offset_pct'}


def _coerce(name: str, value: Any) -> Any:
    try:
        if name in _TIME_FIELDS:
            return _parse_time(name, value)
        if name == 'trailing_tier_table':
            return _parse_tiers(value)
        if name == 'disabled_rules':
            if value is None:
                return tuple()
            if isinstance(value, str):
                return (value,)
            return tuple(str(v) for v in value)
        if name == 'timezone':
            return str(value)
        if name in _BOOL_FIELDS:
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)
        if name in _INT_FIELDS:
            return int(value)
        if name in _OPTIONAL_FLOATS and value is None:
            return None
        return float(value)
    except FatalConfigError:
        raise
    except (TypeError, ValueError, KeyError) as exc:
        raise FatalConfigError(f"Invalid value for risk.{name}: {value!r}") from exc


def _parse_time(name: str, value: Any) -> Optional[dtime]:
    if value is None or value == '':
        if name == 'time_exit_at':
            return None
        raise FatalConfigError(f"risk.{name} is required")
    if isinstance(value, dtime):
        return value
    if isinstance(value, int):
        # YAML 1.1 reads unquoted 15:20 as a sexagesimal integer
        hours, minutes = divmod(value, 60)
        return dtime(hours, minutes)
    parts = str(value).strip().split(':')
    if len(parts) not in (2, 3):
        raise FatalConfigError(f"risk.{name} must be HH:MM, got {value!r}")
    return dtime(*(int(p) for p in parts))


def _parse_tiers(value: Any) -> Tuple[TrailingTier, ...]:
    if not value:
        return DEFAULT_TIERS
    tiers = []
    if isinstance(value, Mapping):
        items = value.items()
    else:
        items = []
        for entry in value:
            if isinstance(entry, Mapping):
                items.append((entry['threshold_pct'], entry['sl_offset_pct']))
            else:
                threshold, offset = entry
                items.append((threshold, offset))
    for threshold, offset in items:
        tiers.append(TrailingTier(float(threshold), float(offset)))
    return tuple(sorted(tiers, key=lambda t: t.threshold_pct))


def load_risk_config(source: Any = None) -> RiskConfig:
    """Build the RiskConfig from the `risk` section of the loaded YAML config."""
    if source is None:
        from .config_loader import config as source
    section = source.section('risk') if hasattr(source, 'section') else dict(source.get('risk') or {})
    return RiskConfig.from_mapping(section)
