from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ExitRequest:
    """Market exit for one position: opposite side, full quantity."""

    position_id: str
    segment: str
    instrument_id: str
    side: str
    quantity: float
    reference_price: Optional[float] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "segment": self.segment,
            "instrument_id": self.instrument_id,
            "side": self.side,
            "quantity": self.quantity,
            "reference_price": self.reference_price,
            "reason": self.reason,
        }


@dataclass
class OrderConfirmation:
    """Normalized acknowledgement from either the paper or the live router."""

    instrument_id: str
    side: str
    quantity: float
    status: Optional[str] = None
    average_price: Optional[float] = None
    order_id: Optional[str] = None
    simulated: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.order_id:
            return self.order_id
        fallback = self.raw.get("orderId")
        if fallback is not None:
            return str(fallback)
        return "order"

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "instrument_id": self.instrument_id,
            "side": self.side,
            "quantity": self.quantity,
            "status": self.status,
            "average_price": self.average_price,
            "simulated": self.simulated,
        }
        if self.raw:
            data["raw"] = self.raw
        return data
