import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import asyncpg

from risk.errors import ConcurrencyConflict, ValidationError
from risk.models import PnlSnapshot, Position, PositionStatus, check_transition


logger = logging.getLogger(__name__)

_PNL_FIELDS = ('pnl', 'pnl_pct', 'current_price', 'high_water_mark', 'peak_pnl_pct')
_MUTABLE_ON_TRANSITION = {
    'exit_reason', 'exit_price', 'exited_at', 'stop_price', 'sl_offset_pct', 'broker_order_ref',
}


class PositionStore(ABC):
    """Durable store contract used by the risk core."""

    @abstractmethod
    async def create(self, position: Position) -> Position:
        ...

    @abstractmethod
    async def get(self, position_id: str) -> Optional[Position]:
        ...

    @abstractmethod
    async def list_by_status(self, status: PositionStatus) -> List[Position]:
        ...

    async def list_active(self) -> List[Position]:
        return await self.list_by_status(PositionStatus.ACTIVE)

    @abstractmethod
    async def transition_status(
        self, position_id: str, from_status: PositionStatus, to_status: PositionStatus, **fields: Any
    ) -> Position:
        """Atomic compare-and-swap on status; raises ConcurrencyConflict when ``from_status`` no longer holds."""

    @abstractmethod
    async def sync_pnl(self, position_id: str, snapshot: PnlSnapshot) -> None:
        ...

    @abstractmethod
    async def mark_bracket_fill(self, position_id: str, leg: str) -> None:
        """Record that the broker filled the attached stop or target leg."""

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - _MUTABLE_ON_TRANSITION
    if unknown:
        raise ValidationError(f"Fields not writable on transition: {', '.join(sorted(unknown))}")


class InMemoryPositionStore(PositionStore):
    """Thread-safe store for paper trading and tests."""

    def __init__(self):
        self._rows: Dict[str, Position] = {}
        self._lock = threading.Lock()

    async def create(self, position: Position) -> Position:
        with self._lock:
            if position.id in self._rows:
                raise ValidationError(f"Position {position.id} already exists")
            self._rows[position.id] = position.copy()
            return position.copy()

    async def get(self, position_id: str) -> Optional[Position]:
        with self._lock:
            row = self._rows.get(position_id)
            return row.copy() if row else None

    async def list_by_status(self, status: PositionStatus) -> List[Position]:
        with self._lock:
            return [row.copy() for row in self._rows.values() if row.status == status]

    async def transition_status(
        self, position_id: str, from_status: PositionStatus, to_status: PositionStatus, **fields: Any
    ) -> Position:
        _check_fields(fields)
        check_transition(position_id, from_status, to_status)
        with self._lock:
            row = self._rows.get(position_id)
            if row is None:
                raise ConcurrencyConflict(position_id, from_status.value, None)
            if row.status != from_status:
                raise ConcurrencyConflict(position_id, from_status.value, row.status.value)
            row.status = to_status
            for name, value in fields.items():
                setattr(row, name, value)
            return row.copy()

    async def sync_pnl(self, position_id: str, snapshot: PnlSnapshot) -> None:
        with self._lock:
            row = self._rows.get(position_id)
            if row is None or row.status.terminal:
                return
            row.pnl = snapshot.pnl
            row.pnl_pct = snapshot.pnl_pct
            row.current_price = snapshot.last_price
            row.high_water_mark = snapshot.high_water_mark
            row.peak_pnl_pct = snapshot.peak_pnl_pct
            row.last_price_at = snapshot.timestamp

    async def mark_bracket_fill(self, position_id: str, leg: str) -> None:
        with self._lock:
            row = self._rows.get(position_id)
            if row is not None and not row.status.terminal:
                row.bracket_fill = leg


_COLUMNS = (
    'id', 'segment', 'instrument_id', 'symbol', 'side', 'quantity', 'entry_price', 'status',
    'stop_price', 'target_price', 'current_price', 'pnl', 'pnl_pct', 'peak_pnl_pct',
    'high_water_mark', 'sl_offset_pct', 'created_at', 'exited_at', 'exit_reason', 'exit_price',
    'simulated', 'broker_order_ref', 'option_type', 'underlying_segment',
    'underlying_instrument_id', 'underlying_symbol', 'bracket_fill',
)
_TIMESTAMP_COLUMNS = {'created_at', 'exited_at'}


def _to_db(name: str, value: Any) -> Any:
    if name == 'status' and isinstance(value, PositionStatus):
        return value.value
    if name in _TIMESTAMP_COLUMNS and value is not None:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    return value


def _from_row(row: Mapping[str, Any]) -> Position:
    data = {name: row[name] for name in _COLUMNS if name in row}
    for name in _TIMESTAMP_COLUMNS:
        value = data.get(name)
        if isinstance(value, datetime):
            data[name] = value.timestamp()
    data['status'] = PositionStatus(data['status'])
    for name in ('pnl', 'pnl_pct', 'peak_pnl_pct', 'high_water_mark'):
        if data.get(name) is None:
            data[name] = 0.0
    return Position(**data)


class PostgresPositionStore(PositionStore):
    """asyncpg-backed store. Assumes the ``positions`` table already exists."""

    def __init__(self, db_config: Mapping[str, Any], table: str = 'positions'):
        self.db_config = db_config
        self.table = db_config.get('table', table)
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        cfg = self.db_config
        self.pool = await asyncpg.create_pool(
            host=cfg['host'],
            port=int(cfg['port']),
            database=cfg['database'],
            user=cfg['user'],
            password=cfg.get('password'),
            min_size=int(cfg.get('min_pool_size', 2)),
            max_size=int(cfg.get('max_pool_size', 10)),
        )
        logger.info("Position store connected to %s/%s", cfg['host'], cfg['database'])

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError("PostgresPositionStore.initialize() has not been awaited")
        return self.pool

    async def create(self, position: Position) -> Position:
        values = [_to_db(name, getattr(position, name)) for name in _COLUMNS]
        placeholders = ', '.join(f'${i}' for i in range(1, len(_COLUMNS) + 1))
        query = f"INSERT INTO {self.table} ({', '.join(_COLUMNS)}) VALUES ({placeholders})"
        try:
            await self._require_pool().execute(query, *values)
        except asyncpg.UniqueViolationError as exc:
            raise ValidationError(f"Position {position.id} already exists") from exc
        return position.copy()

    async def get(self, position_id: str) -> Optional[Position]:
        row = await self._require_pool().fetchrow(
            f"SELECT {', '.join(_COLUMNS)} FROM {self.table} WHERE id = $1", position_id
        )
        return _from_row(row) if row else None

    async def list_by_status(self, status: PositionStatus) -> List[Position]:
        rows = await self._require_pool().fetch(
            f"SELECT {', '.join(_COLUMNS)} FROM {self.table} WHERE status = $1 ORDER BY created_at",
            status.value,
        )
        return [_from_row(row) for row in rows]

    async def transition_status(
        self, position_id: str, from_status: PositionStatus, to_status: PositionStatus, **fields: Any
    ) -> Position:
        _check_fields(fields)
        check_transition(position_id, from_status, to_status)
        assignments = ['status = $3']
        values: List[Any] = [position_id, from_status.value, to_status.value]
        for name, value in fields.items():
            values.append(_to_db(name, value))
            assignments.append(f"{name} = ${len(values)}")
        query = (
            f"UPDATE {self.table} SET {', '.join(assignments)} "
            f"WHERE id = $1 AND status = $2 RETURNING {', '.join(_COLUMNS)}"
        )
        row = await self._require_pool().fetchrow(query, *values)
        if row is None:
            current = await self.get(position_id)
            raise ConcurrencyConflict(position_id, from_status.value, current.status.value if current else None)
        return _from_row(row)

    async def sync_pnl(self, position_id: str, snapshot: PnlSnapshot) -> None:
        await self._require_pool().execute(
            f"UPDATE {self.table} SET pnl = $2, pnl_pct = $3, current_price = $4, "
            f"high_water_mark = $5, peak_pnl_pct = $6, pnl_synced_at = $7 "
            f"WHERE id = $1 AND status IN ('active', 'exiting')",
            position_id,
            snapshot.pnl,
            snapshot.pnl_pct,
            snapshot.last_price,
            snapshot.high_water_mark,
            snapshot.peak_pnl_pct,
            datetime.fromtimestamp(snapshot.timestamp or time.time(), tz=timezone.utc),
        )

    async def mark_bracket_fill(self, position_id: str, leg: str) -> None:
        await self._require_pool().execute(
            f"UPDATE {self.table} SET bracket_fill = $2 WHERE id = $1 AND status IN ('active', 'exiting')",
            position_id,
            leg,
        )
