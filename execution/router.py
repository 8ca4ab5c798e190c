from abc import ABC, abstractmethod
from typing import Optional

from risk.models import Position
from .types import ExitRequest, OrderConfirmation


class OrderRouter(ABC):
    """Contract shared by the simulated and the live order paths."""

    simulated: bool = False

    @abstractmethod
    async def submit_exit(self, request: ExitRequest) -> OrderConfirmation:
        """Submit a market exit; raise TransientIOError on failure."""

    @abstractmethod
    async def modify_stop(self, position: Position, stop_price: float) -> bool:
        """Move the broker-side stop for ``position``; True when accepted."""

    async def close(self) -> None:
        return None


def exit_request_for(position: Position, reason: Optional[str] = None,
                     reference_price: Optional[float] = None) -> ExitRequest:
    side = "sell" if position.side == "long" else "buy"
    return ExitRequest(
        position_id=position.id,
        segment=position.segment,
        instrument_id=str(position.instrument_id),
        side=side,
        quantity=position.quantity,
        reference_price=reference_price,
        reason=reason,
    )
