import copy
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidTransition, ValidationError


class PositionStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXITING = "exiting"
    EXITED = "exited"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (PositionStatus.EXITED, PositionStatus.CANCELLED)


# EXITING is only entered by the exit engine and resolves to EXITED or back to ACTIVE.
ALLOWED_TRANSITIONS = {
    PositionStatus.PENDING: {PositionStatus.ACTIVE, PositionStatus.CANCELLED},
    PositionStatus.ACTIVE: {PositionStatus.EXITING, PositionStatus.EXITED, PositionStatus.CANCELLED},
    PositionStatus.EXITING: {PositionStatus.EXITED, PositionStatus.ACTIVE},
    PositionStatus.EXITED: set(),
    PositionStatus.CANCELLED: set(),
}


def check_transition(position_id: str, current: PositionStatus, target: PositionStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(position_id, current.value, target.value)


@dataclass
class Tick:
    segment: str
    instrument_id: str
    price: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class PnlSnapshot:
    position_id: str
    pnl: float
    pnl_pct: float
    last_price: float
    high_water_mark: float
    peak_pnl_pct: float
    timestamp: float = field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Position:
    segment: str
    instrument_id: str
    side: str
    quantity: float
    entry_price: float
    symbol: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: PositionStatus = PositionStatus.ACTIVE
    stop_price: Optional[float] = None
    target_price: Optional[float] = None
    current_price: Optional[float] = None
    pnl: float = 0.0
    pnl_pct: float = 0.0
    peak_pnl_pct: float = 0.0
    high_water_mark: float = 0.0
    sl_offset_pct: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    last_price_at: Optional[float] = None
    exited_at: Optional[float] = None
    exit_reason: Optional[str] = None
    exit_price: Optional[float] = None
    simulated: bool = True
    broker_order_ref: Optional[str] = None
    bracket_fill: Optional[str] = None
    option_type: Optional[str] = None
    underlying_segment: Optional[str] = None
    underlying_instrument_id: Optional[str] = None
    underlying_symbol: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = PositionStatus(self.status)
        self.side = (self.side or "").lower()
        if self.side not in ("long", "short"):
            raise ValidationError(f"Unsupported side {self.side!r} for position {self.id}")
        if self.entry_price is None or float(self.entry_price) <= 0:
            raise ValidationError(f"Position {self.id} requires a positive entry_price")
        if self.quantity is None or float(self.quantity) <= 0:
            raise ValidationError(f"Position {self.id} requires a positive quantity")
        self.entry_price = float(self.entry_price)
        self.quantity = float(self.quantity)

    @property
    def direction(self) -> int:
        return 1 if self.side == "long" else -1

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    @property
    def market_bias(self) -> str:
        """Direction the position profits from in the underlying."""
        option_type = (self.option_type or "").upper()
        if option_type in ("CE", "CALL"):
            bullish = True
        elif option_type in ("PE", "PUT"):
            bullish = False
        else:
            bullish = True
        if self.side == "short":
            bullish = not bullish
        return "bullish" if bullish else "bearish"

    def apply_price(self, price: float, timestamp: Optional[float] = None) -> None:
        """Recompute every price-derived field. The only writer of pnl/pnl_pct."""
        if self.status.terminal:
            return
        price = float(price)
        if price <= 0:
            raise ValidationError(f"Non-positive price {price} for position {self.id}")
        self.current_price = price
        self.pnl = (price - self.entry_price) * self.quantity * self.direction
        self.pnl_pct = (price - self.entry_price) / self.entry_price * 100.0 * self.direction
        self.high_water_mark = max(self.high_water_mark, self.pnl)
        self.last_price_at = timestamp if timestamp is not None else time.time()

    def transition(self, target: PositionStatus) -> None:
        check_transition(self.id, self.status, target)
        self.status = target

    def snapshot(self, timestamp: Optional[float] = None) -> Optional[PnlSnapshot]:
        if self.current_price is None:
            return None
        return PnlSnapshot(
            position_id=self.id,
            pnl=self.pnl,
            pnl_pct=self.pnl_pct,
            last_price=self.current_price,
            high_water_mark=self.high_water_mark,
            peak_pnl_pct=self.peak_pnl_pct,
            timestamp=timestamp if timestamp is not None else (self.last_price_at or time.time()),
        )

    def copy(self) -> "Position":
        return copy.copy(self)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
