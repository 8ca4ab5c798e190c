import logging
from typing import Any, Dict, Mapping

from ingest.rest_client import BrokerRESTClient
from risk.errors import BrokerAPIError, OrderRejectedError
from risk.models import Position
from execution.router import OrderRouter
from execution.types import ExitRequest, OrderConfirmation


logger = logging.getLogger(__name__)

REJECTED_STATUSES = {"REJECTED", "CANCELLED", "EXPIRED"}


class BrokerOrderRouter(OrderRouter):
    """Live order path over the broker REST API."""

    simulated = False

    def __init__(
        self,
        rest: BrokerRESTClient,
        orders_path: str = "/v2/orders",
        super_orders_path: str = "/v2/super/orders",
        product_type: str = "INTRADAY",
    ):
        self.rest = rest
        self.orders_path = orders_path
        self.super_orders_path = super_orders_path
        self.product_type = product_type

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> 'BrokerOrderRouter':
        rest = BrokerRESTClient(
            cfg.get("base_url"),
            access_token=cfg.get("access_token"),
            client_id=cfg.get("client_id"),
            timeout_s=float(cfg.get("timeout_s", 10)),
            error_cls=OrderRejectedError,
        )
        return cls(
            rest,
            orders_path=cfg.get("orders_path", "/v2/orders"),
            super_orders_path=cfg.get("super_orders_path", "/v2/super/orders"),
        )

    async def submit_exit(self, request: ExitRequest) -> OrderConfirmation:
        body: Dict[str, Any] = {
            "dhanClientId": self.rest.client_id,
            "correlationId": f"exit-{request.position_id}"[:25],
            "transactionType": request.side.upper(),
            "exchangeSegment": request.segment,
            "productType": self.product_type,
            "orderType": "MARKET",
            "validity": "DAY",
            "securityId": request.instrument_id,
            "quantity": int(request.quantity),
        }
        payload = await self.rest.post(self.orders_path, body=body)
        if not isinstance(payload, dict):
            raise OrderRejectedError(None, "unexpected order response", str(payload)[:200])
        status = str(payload.get("orderStatus") or "").upper()
        if status in REJECTED_STATUSES:
            raise OrderRejectedError(None, status, str(payload)[:200])
        order_id = payload.get("orderId")
        logger.info("Exit order %s placed for %s (%s)", order_id, request.position_id, status or "ack")
        return OrderConfirmation(
            instrument_id=request.instrument_id,
            side=request.side.upper(),
            quantity=request.quantity,
            status=status or None,
            average_price=_as_float(payload.get("averageTradedPrice") or payload.get("price")),
            order_id=str(order_id) if order_id is not None else None,
            simulated=False,
            raw=payload,
        )

    async def modify_stop(self, position: Position, stop_price: float) -> bool:
        if not position.broker_order_ref:
            logger.warning("No broker order ref for %s; cannot move stop", position.id)
            return False
        body = {
            "dhanClientId": self.rest.client_id,
            "orderId": position.broker_order_ref,
            "legName": "STOP_LOSS_LEG",
            "stopLossPrice": round(stop_price, 2),
        }
        try:
            await self.rest.put(f"{self.super_orders_path}/{position.broker_order_ref}", body=body)
        except BrokerAPIError as e:
            logger.error("Stop modification failed for %s: %s", position.id, e)
            return False
        return True

    async def close(self) -> None:
        await self.rest.close()


def _as_float(value: Any):
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if result > 0 else None
