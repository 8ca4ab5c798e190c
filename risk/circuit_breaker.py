import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import CircuitOpenError, TransientIOError


logger = logging.getLogger(__name__)


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    key: str
    threshold: int
    cooldown: float
    state: BreakerState = BreakerState.CLOSED
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None
    opened_at: Optional[float] = None
    trial_in_flight: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_at": self.last_failure_at,
            "opened_at": self.opened_at,
            "threshold": self.threshold,
            "cooldown": self.cooldown,
        }


class CircuitBreaker:
    """Per-endpoint-key breaker: closed -> open -> half_open -> closed/open.

    Uses the monotonic clock. A half-open key grants exactly one trial call
    until that trial reports success or failure.
    """

    def __init__(self, threshold: int = 5, cooldown: float = 60.0):
        self.threshold = int(threshold)
        self.cooldown = float(cooldown)
        self._states: Dict[str, CircuitBreakerState] = {}
        self._lock = threading.Lock()

    def _entry(self, key: str) -> CircuitBreakerState:
        entry = self._states.get(key)
        if entry is None:
            entry = CircuitBreakerState(key=key, threshold=self.threshold, cooldown=self.cooldown)
            self._states[key] = entry
        return entry

    def allow(self, key: str) -> bool:
        with self._lock:
            entry = self._entry(key)
            if entry.state == BreakerState.CLOSED:
                return True
            if entry.state == BreakerState.OPEN:
                if entry.opened_at is not None and time.monotonic() - entry.opened_at >= entry.cooldown:
                    entry.state = BreakerState.HALF_OPEN
                    entry.trial_in_flight = True
                    logger.info("Circuit breaker HALF_OPEN for %s; allowing trial call", key)
                    return True
                return False
            if entry.trial_in_flight:
                return False
            entry.trial_in_flight = True
            return True

    def record_success(self, key: str) -> None:
        with self._lock:
            entry = self._entry(key)
            previous = entry.state
            entry.state = BreakerState.CLOSED
            entry.consecutive_failures = 0
            entry.opened_at = None
            entry.trial_in_flight = False
        if previous != BreakerState.CLOSED:
            logger.info("Circuit breaker CLOSED for %s", key)

    def record_failure(self, key: str) -> None:
        opened = False
        with self._lock:
            entry = self._entry(key)
            now = time.monotonic()
            entry.consecutive_failures += 1
            entry.last_failure_at = now
            if entry.state == BreakerState.HALF_OPEN:
                entry.state = BreakerState.OPEN
                entry.opened_at = now
                entry.trial_in_flight = False
                opened = True
            elif entry.state == BreakerState.CLOSED and entry.consecutive_failures >= entry.threshold:
                entry.state = BreakerState.OPEN
                entry.opened_at = now
                opened = True
            failures = entry.consecutive_failures
        if opened:
            logger.warning("Circuit breaker OPEN for %s after %s consecutive failures", key, failures)

    async def call(self, key: str, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        if not self.allow(key):
            raise CircuitOpenError(key)
        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            self._release_trial(key)
            raise
        except TransientIOError:
            self.record_failure(key)
            raise
        except Exception as e:
            self.record_failure(key)
            raise TransientIOError(f"{key} failed: {e}") from e
        self.record_success(key)
        return result

    def _release_trial(self, key: str) -> None:
        with self._lock:
            entry = self._states.get(key)
            if entry is not None:
                entry.trial_in_flight = False

    def state(self, key: str) -> BreakerState:
        with self._lock:
            entry = self._states.get(key)
            return entry.state if entry else BreakerState.CLOSED

    def failures(self, key: str) -> int:
        with self._lock:
            entry = self._states.get(key)
            return entry.consecutive_failures if entry else 0

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {key: entry.as_dict() for key, entry in self._states.items()}

    def overall_state(self) -> str:
        with self._lock:
            states = {entry.state for entry in self._states.values()}
        if BreakerState.OPEN in states:
            return BreakerState.OPEN.value
        if BreakerState.HALF_OPEN in states:
            return BreakerState.HALF_OPEN.value
        return BreakerState.CLOSED.value

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._states.clear()
            else:
                self._states.pop(key, None)
