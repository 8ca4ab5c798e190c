import logging
import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple

from risk.errors import ValidationError
from risk.models import Position


logger = logging.getLogger(__name__)


class _Record:
    __slots__ = ("position", "lock")

    def __init__(self, position: Position):
        self.position = position
        self.lock = threading.Lock()


class PositionCache:
    """In-memory table of open positions.

    The index lock only guards membership; each record carries its own lock so
    the tick path and the monitoring loop contend per position, not globally.
    Readers always receive copies.
    """

    def __init__(self):
        self._records: Dict[str, _Record] = {}
        self._by_instrument: Dict[Tuple[str, str], Set[str]] = {}
        self._index_lock = threading.Lock()

    def add(self, position: Position) -> None:
        record = _Record(position.copy())
        key = (position.segment, str(position.instrument_id))
        with self._index_lock:
            previous = self._records.get(position.id)
            if previous is not None:
                prev_key = (previous.position.segment, str(previous.position.instrument_id))
                self._discard_index(prev_key, position.id)
            self._records[position.id] = record
            self._by_instrument.setdefault(key, set()).add(position.id)

    def remove(self, position_id: str) -> Optional[Position]:
        with self._index_lock:
            record = self._records.pop(position_id, None)
            if record is None:
                return None
            key = (record.position.segment, str(record.position.instrument_id))
            self._discard_index(key, position_id)
        with record.lock:
            return record.position.copy()

    def _discard_index(self, key: Tuple[str, str], position_id: str) -> None:
        ids = self._by_instrument.get(key)
        if ids is None:
            return
        ids.discard(position_id)
        if not ids:
            del self._by_instrument[key]

    def get(self, position_id: str) -> Optional[Position]:
        with self._index_lock:
            record = self._records.get(position_id)
        if record is None:
            return None
        with record.lock:
            return record.position.copy()

    def contains(self, position_id: str) -> bool:
        with self._index_lock:
            return position_id in self._records

    def ids(self) -> List[str]:
        with self._index_lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._index_lock:
            return len(self._records)

    def find_by_order_ref(self, order_ref: str) -> Optional[str]:
        with self._index_lock:
            records = list(self._records.values())
        for record in records:
            with record.lock:
                if record.position.broker_order_ref == order_ref:
                    return record.position.id
        return None

    def has_instrument(self, segment: str, instrument_id: str) -> bool:
        with self._index_lock:
            return bool(self._by_instrument.get((segment, str(instrument_id))))

    def instruments(self) -> List[Tuple[str, str]]:
        with self._index_lock:
            return list(self._by_instrument)

    def _records_for(self, instrument_id: str, segment: Optional[str]) -> List[_Record]:
        instrument_id = str(instrument_id)
        with self._index_lock:
            if segment is not None:
                ids: Iterable[str] = list(self._by_instrument.get((segment, instrument_id), ()))
            else:
                ids = [pid for (seg, iid), pids in self._by_instrument.items() if iid == instrument_id for pid in pids]
            return [self._records[pid] for pid in ids if pid in self._records]

    def update_price(
        self,
        instrument_id: str,
        price: float,
        segment: Optional[str] = None,
        timestamp: Optional[float] = None,
    ) -> List[Position]:
        """Apply a price to every position on the instrument; returns the updated copies."""
        updated = []
        for record in self._records_for(instrument_id, segment):
            with record.lock:
                try:
                    record.position.apply_price(price, timestamp)
                except ValidationError as e:
                    logger.warning("Rejected price %s for %s: %s", price, record.position.id, e)
                    continue
                updated.append(record.position.copy())
        return updated

    def update_fields(self, position_id: str, **fields) -> Optional[Position]:
        """Write non-price fields (peak, stop, status) under the record lock."""
        with self._index_lock:
            record = self._records.get(position_id)
        if record is None:
            return None
        with record.lock:
            for name, value in fields.items():
                if name in ("pnl", "pnl_pct", "current_price"):
                    raise ValidationError(f"{name} is derived from price updates and cannot be set directly")
                if not hasattr(record.position, name):
                    raise ValidationError(f"Unknown position field {name}")
                setattr(record.position, name, value)
            return record.position.copy()

    def snapshot_all(self) -> List[Position]:
        """Stable copies of every cached position for one monitoring cycle."""
        with self._index_lock:
            records = list(self._records.values())
        snapshot = []
        for record in records:
            with record.lock:
                snapshot.append(record.position.copy())
        return snapshot
