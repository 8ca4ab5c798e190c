import errno
import logging
import re
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)

_BREAKER_STATE_VALUES = {'closed': 0, 'half_open': 1, 'open': 2}


def reason_slug(reason: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '_', (reason or 'unknown').lower()).strip('_')
    return slug or 'unknown'


class CycleStats:
    """Aggregate monitoring-cycle statistics.

    Cycle timings, outcome counters and the recent-error window each have
    their own lock.
    """

    def __init__(self, recent_error_window: float = 300.0):
        self.recent_error_window = recent_error_window
        self._cycle_lock = threading.Lock()
        self._counts_lock = threading.Lock()
        self._errors_lock = threading.Lock()
        self._recent_errors: Deque[float] = deque(maxlen=1000)
        self.reset()

    def reset(self) -> None:
        with self._cycle_lock:
            self.cycle_count = 0
            self.total_cycle_time = 0.0
            self.min_cycle_time: Optional[float] = None
            self.max_cycle_time = 0.0
            self.last_cycle_time: Optional[float] = None
            self.total_positions = 0
            self.total_cache_fetches = 0
            self.total_api_calls = 0
            self.last_position_count = 0
        with self._counts_lock:
            self.exit_counts: Dict[str, int] = {}
            self.error_counts: Dict[str, int] = {}
        with self._errors_lock:
            self._recent_errors.clear()

    def record_cycle(self, duration: float, positions: int, cache_fetches: int, api_calls: int) -> None:
        with self._cycle_lock:
            self.cycle_count += 1
            self.total_cycle_time += duration
            self.last_cycle_time = duration
            self.min_cycle_time = duration if self.min_cycle_time is None else min(self.min_cycle_time, duration)
            self.max_cycle_time = max(self.max_cycle_time, duration)
            self.total_positions += positions
            self.total_cache_fetches += cache_fetches
            self.total_api_calls += api_calls
            self.last_position_count = positions

    def record_exit(self, reason: str) -> None:
        key = f"exit_{reason_slug(reason)}"
        with self._counts_lock:
            self.exit_counts[key] = self.exit_counts.get(key, 0) + 1

    def record_error(self, error_type: str) -> None:
        key = f"error_{reason_slug(error_type)}"
        with self._counts_lock:
            self.error_counts[key] = self.error_counts.get(key, 0) + 1
        with self._errors_lock:
            self._recent_errors.append(time.monotonic())

    def recent_error_count(self, now: Optional[float] = None) -> int:
        now = now if now is not None else time.monotonic()
        cutoff = now - self.recent_error_window
        with self._errors_lock:
            while self._recent_errors and self._recent_errors[0] < cutoff:
                self._recent_errors.popleft()
            return len(self._recent_errors)

    def as_dict(self) -> Dict[str, Any]:
        with self._cycle_lock:
            count = self.cycle_count
            data: Dict[str, Any] = {
                'cycle_count': count,
                'last_cycle_time': self.last_cycle_time,
                'total_cycle_time': self.total_cycle_time,
                'min_cycle_time': self.min_cycle_time,
                'max_cycle_time': self.max_cycle_time,
                'avg_cycle_time': self.total_cycle_time / count if count else 0.0,
                'total_positions': self.total_positions,
                'avg_positions_per_cycle': self.total_positions / count if count else 0.0,
                'total_cache_fetches': self.total_cache_fetches,
                'avg_cache_fetches_per_cycle': self.total_cache_fetches / count if count else 0.0,
                'total_api_calls': self.total_api_calls,
                'avg_api_calls_per_cycle': self.total_api_calls / count if count else 0.0,
            }
        with self._counts_lock:
            data.update(self.exit_counts)
            data.update(self.error_counts)
        return data


class MetricsCollector:
    def __init__(self, registry: Optional[CollectorRegistry] = None, recent_error_window: float = 300.0):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.cycle_stats = CycleStats(recent_error_window)
        r = self.registry

        self.ticks_processed = Counter('ticks_processed_total', 'Ticks applied to the position cache', registry=r)
        self.dropped_events = Counter('dropped_events_total', 'Inbound events dropped', ['reason'], registry=r)
        self.reconnect_count = Counter('feed_reconnects_total', 'Market feed reconnects', registry=r)
        self.pnl_flushes = Counter('pnl_flush_snapshots_total', 'Snapshots flushed into the PnL cache', registry=r)

        self.cycle_duration = Histogram(
            'monitoring_cycle_seconds', 'Monitoring cycle duration',
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
            registry=r,
        )
        self.last_cycle_duration = Gauge('monitoring_last_cycle_seconds', 'Last monitoring cycle duration', registry=r)
        self.active_positions = Gauge('active_positions', 'Positions evaluated in the last cycle', registry=r)
        self.cache_fetches = Counter('pnl_cache_fetches_total', 'PnL cache lookups', registry=r)
        self.api_calls = Counter('fallback_api_calls_total', 'Fallback quote API calls', ['segment'], registry=r)
        self.stale_positions = Counter('stale_positions_total', 'Positions evaluated on last-known PnL', registry=r)

        self.exits = Counter('exits_total', 'Executed exits', ['reason'], registry=r)
        self.exit_failures = Counter('exit_failures_total', 'Failed exit submissions', registry=r)
        self.exit_conflicts = Counter('exit_conflicts_total', 'Exit attempts that lost the status race', registry=r)
        self.stop_adjustments = Counter('trailing_stop_adjustments_total', 'Broker stop moves', registry=r)
        self.rule_errors = Counter('rule_errors_total', 'Rule evaluation errors', ['rule'], registry=r)
        self.errors = Counter('risk_errors_total', 'Errors by type', ['type'], registry=r)
        self.worker_restarts = Counter('worker_restarts_total', 'Supervisor restarts', ['worker'], registry=r)
        self.breaker_state = Gauge('circuit_breaker_state', 'Breaker state (0 closed, 1 half_open, 2 open)', ['key'], registry=r)

    def record_tick(self):
        self.ticks_processed.inc()

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_pnl_flush(self, count: int):
        if count:
            self.pnl_flushes.inc(count)

    def record_cycle(self, duration: float, positions: int, cache_fetches: int, api_calls: int):
        self.cycle_stats.record_cycle(duration, positions, cache_fetches, api_calls)
        self.cycle_duration.observe(duration)
        self.last_cycle_duration.set(duration)
        self.active_positions.set(positions)
        if cache_fetches:
            self.cache_fetches.inc(cache_fetches)

    def record_api_call(self, segment: str):
        self.api_calls.labels(segment=segment).inc()

    def record_stale(self):
        self.stale_positions.inc()

    def record_exit(self, reason: str):
        self.cycle_stats.record_exit(reason)
        self.exits.labels(reason=reason_slug(reason)[:64]).inc()

    def record_exit_failure(self):
        self.exit_failures.inc()
        self.record_error('exit_failure')

    def record_exit_conflict(self):
        self.exit_conflicts.inc()

    def record_stop_adjustment(self):
        self.stop_adjustments.inc()

    def record_rule_error(self, rule_name: str):
        self.rule_errors.labels(rule=rule_name).inc()
        self.record_error('rule')

    def record_error(self, error_type: str):
        self.cycle_stats.record_error(error_type)
        self.errors.labels(type=reason_slug(error_type)).inc()

    def record_worker_restart(self, worker: str):
        self.worker_restarts.labels(worker=worker).inc()
        self.record_error('worker_crash')

    def update_breaker_states(self, snapshot: Dict[str, Dict[str, Any]]):
        for key, entry in snapshot.items():
            self.breaker_state.labels(key=key).set(_BREAKER_STATE_VALUES.get(entry.get('state'), 0))

    def recent_error_count(self) -> int:
        return self.cycle_stats.recent_error_count()

    def reset_metrics(self):
        self.cycle_stats.reset()


_METRICS_SERVER_STARTED = False


def _write_port_file(port_file: Optional[str], port: int) -> None:
    if not port_file:
        return
    path = Path(port_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", path, exc)


def start_metrics_server(
    port: int,
    registry: CollectorRegistry,
    port_scan_limit: int = 0,
    port_file: Optional[str] = None,
) -> Optional[int]:
    global _METRICS_SERVER_STARTED
    if _METRICS_SERVER_STARTED:
        return None
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
        candidate = port + offset
        try:
            start_http_server(candidate, registry=registry)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning("Prometheus metrics port %s already in use; trying next candidate", candidate)
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _write_port_file(port_file, candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    raise RuntimeError(
        f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
    ) from last_error
