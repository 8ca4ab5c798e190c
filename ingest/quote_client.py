import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from risk.errors import QuoteAPIError
from .rest_client import BrokerRESTClient


logger = logging.getLogger(__name__)


class QuoteClient:
    """Fallback LTP lookup, one request per exchange segment."""

    def __init__(self, rest: BrokerRESTClient, ltp_path: str = "/v2/marketfeed/ltp"):
        self.rest = rest
        self.ltp_path = ltp_path
        self.request_count = 0

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> 'QuoteClient':
        rest = BrokerRESTClient(
            cfg.get("base_url"),
            access_token=cfg.get("access_token"),
            client_id=cfg.get("client_id"),
            timeout_s=float(cfg.get("timeout_s", 5)),
            error_cls=QuoteAPIError,
        )
        return cls(rest, ltp_path=cfg.get("ltp_path", "/v2/marketfeed/ltp"))

    async def fetch_ltp(self, segment: str, instrument_ids: Iterable[str]) -> Dict[str, float]:
        ids = sorted({str(i) for i in instrument_ids})
        if not ids:
            return {}
        self.request_count += 1
        payload = await self.rest.post(self.ltp_path, body={segment: [_as_wire_id(i) for i in ids]})
        return self._parse(segment, payload)

    @staticmethod
    def _parse(segment: str, payload: Any) -> Dict[str, float]:
        if not isinstance(payload, dict):
            raise QuoteAPIError(None, "unexpected LTP payload", str(payload)[:200])
        if payload.get("status") not in (None, "success"):
            raise QuoteAPIError(None, str(payload.get("status")), str(payload)[:200])
        by_segment = (payload.get("data") or {}).get(segment) or {}
        prices: Dict[str, float] = {}
        for instrument_id, quote in by_segment.items():
            price: Optional[Any] = quote.get("last_price") if isinstance(quote, dict) else quote
            try:
                value = float(price)
            except (TypeError, ValueError):
                continue
            if value > 0:
                prices[str(instrument_id)] = value
        return prices

    async def close(self):
        await self.rest.close()


def _as_wire_id(instrument_id: str):
    return int(instrument_id) if instrument_id.isdigit() else instrument_id
