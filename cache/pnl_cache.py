import logging
import threading
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Dict, Iterable, Optional, Tuple

from risk.models import PnlSnapshot

if TYPE_CHECKING:
    from orchestration.persistence import PositionStore


logger = logging.getLogger(__name__)


class PnlCache:
    """Shared last-known PnL per position with TTL and throttled write-back."""

    def __init__(
        self,
        position_store: Optional['PositionStore'] = None,
        ttl: float = 6 * 3600.0,
        sync_interval: float = 30.0,
        staleness_threshold: float = 30.0,
    ):
        self.position_store = position_store
        self.ttl = ttl
        self.sync_interval = sync_interval
        self.staleness_threshold = staleness_threshold
        self._entries: Dict[str, Tuple[PnlSnapshot, float]] = {}
        self._last_sync: Dict[str, float] = {}
        self._lock = threading.Lock()

    def store(self, position_id: str, snapshot: PnlSnapshot) -> None:
        expires_at = time.monotonic() + self.ttl
        with self._lock:
            self._entries[position_id] = (replace(snapshot), expires_at)

    def fetch(self, position_id: str) -> Optional[PnlSnapshot]:
        with self._lock:
            entry = self._entries.get(position_id)
            if entry is None:
                return None
            snapshot, expires_at = entry
            if time.monotonic() >= expires_at:
                del self._entries[position_id]
                return None
            return replace(snapshot)

    def fetch_many(self, position_ids: Iterable[str]) -> Dict[str, PnlSnapshot]:
        out = {}
        for position_id in position_ids:
            snapshot = self.fetch(position_id)
            if snapshot is not None:
                out[position_id] = snapshot
        return out

    def is_fresh(self, snapshot: Optional[PnlSnapshot], now: Optional[float] = None) -> bool:
        """A snapshot aged exactly the threshold is still trusted."""
        if snapshot is None:
            return False
        return snapshot.age(now) <= self.staleness_threshold

    def fetch_fresh(self, position_id: str, now: Optional[float] = None) -> Optional[PnlSnapshot]:
        snapshot = self.fetch(position_id)
        return snapshot if self.is_fresh(snapshot, now) else None

    def update_peak(self, position_id: str, peak_pnl_pct: float) -> None:
        with self._lock:
            entry = self._entries.get(position_id)
            if entry is None:
                return
            snapshot, expires_at = entry
            if peak_pnl_pct > snapshot.peak_pnl_pct:
                self._entries[position_id] = (replace(snapshot, peak_pnl_pct=peak_pnl_pct), expires_at)

    async def sync_throttled(self, position_id: str, now: Optional[float] = None) -> bool:
        """Write the cached snapshot to the durable store at most once per sync interval."""
        if self.position_store is None:
            return False
        now = now if now is not None else time.monotonic()
        with self._lock:
            last = self._last_sync.get(position_id)
            if last is not None and now - last < self.sync_interval:
                return False
            entry = self._entries.get(position_id)
            if entry is None:
                return False
            snapshot = replace(entry[0])
            self._last_sync[position_id] = now
        try:
            await self.position_store.sync_pnl(position_id, snapshot)
        except Exception as e:
            with self._lock:
                if self._last_sync.get(position_id) == now:
                    self._last_sync.pop(position_id, None)
            logger.warning("PnL sync failed for %s: %s", position_id, e)
            return False
        return True

    def sweep(self, keep: Optional[Iterable[str]] = None) -> int:
        """Drop expired entries, and entries outside ``keep`` when it is given."""
        now = time.monotonic()
        keep = set(keep) if keep is not None else None
        with self._lock:
            doomed = [
                pid for pid, (_, expires_at) in self._entries.items()
                if now >= expires_at or (keep is not None and pid not in keep)
            ]
            for pid in doomed:
                del self._entries[pid]
            for pid in [pid for pid in self._last_sync if pid not in self._entries]:
                del self._last_sync[pid]
        return len(doomed)

    def clear(self, position_id: str) -> None:
        with self._lock:
            self._entries.pop(position_id, None)
            self._last_sync.pop(position_id, None)

    def __contains__(self, position_id: str) -> bool:
        return self.fetch(position_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
