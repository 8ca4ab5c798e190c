import logging
import uuid
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from risk.errors import OrderRejectedError
from risk.models import Position
from execution.router import OrderRouter
from execution.types import ExitRequest, OrderConfirmation


logger = logging.getLogger(__name__)


class PaperOrderRouter(OrderRouter):
    """Fills exits immediately at the reference price and keeps a local ledger."""

    simulated = True

    def __init__(self) -> None:
        self._fills: Dict[str, OrderConfirmation] = {}
        self._stops: Dict[str, float] = {}
        self.submissions: List[ExitRequest] = []

    @property
    def fills(self) -> Mapping[str, OrderConfirmation]:
        return MappingProxyType(self._fills)

    @property
    def stops(self) -> Mapping[str, float]:
        return MappingProxyType(self._stops)

    async def submit_exit(self, request: ExitRequest) -> OrderConfirmation:
        if request.quantity <= 0:
            raise OrderRejectedError(None, f"invalid quantity {request.quantity}")
        self.submissions.append(request)
        order_id = f"paper-{uuid.uuid4().hex[:8]}"
        confirmation = OrderConfirmation(
            instrument_id=request.instrument_id,
            side=request.side.upper(),
            quantity=request.quantity,
            status="filled",
            average_price=request.reference_price,
            order_id=order_id,
            simulated=True,
            raw=request.as_dict(),
        )
        self._fills[order_id] = confirmation
        logger.info(
            "Paper exit %s %s x%s @ %s (%s)",
            request.side, request.instrument_id, request.quantity, request.reference_price, request.reason,
        )
        return confirmation

    async def modify_stop(self, position: Position, stop_price: float) -> bool:
        self._stops[position.id] = stop_price
        return True

    def stop_for(self, position_id: str) -> Optional[float]:
        return self._stops.get(position_id)
