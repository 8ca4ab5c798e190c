import asyncio
import json
import logging
from typing import Any, Dict, Optional, Type

import aiohttp

from risk.errors import BrokerAPIError


logger = logging.getLogger(__name__)


def configured(value: Optional[str]) -> Optional[str]:
    """Treat unresolved ``${VAR}`` placeholders as unset."""
    if not value or (isinstance(value, str) and value.startswith('${')):
        return None
    return value


class BrokerRESTClient:
    """Shared aiohttp session for the broker's REST API."""

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        client_id: Optional[str] = None,
        timeout_s: float = 10.0,
        error_cls: Type[BrokerAPIError] = BrokerAPIError,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = configured(access_token)
        self.client_id = configured(client_id)
        self.timeout_s = timeout_s
        self.error_cls = error_cls
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s))
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["access-token"] = self.access_token
        if self.client_id:
            headers["client-id"] = self.client_id
        return headers

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method.upper(),
                url,
                params=params,
                json=body,
                headers=self._headers(),
            ) as resp:
                text = await resp.text()
                payload: Any = text
                if "application/json" in resp.headers.get("Content-Type", ""):
                    try:
                        payload = json.loads(text)
                    except ValueError:
                        payload = text

                if resp.status >= 400:
                    msg = None
                    if isinstance(payload, dict):
                        msg = payload.get("errorMessage") or payload.get("message") or payload.get("remarks")
                    raise self.error_cls(resp.status, msg, text)
                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self.error_cls(None, f"{type(e).__name__}: {e}") from e

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("POST", path, body=body)

    async def put(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("PUT", path, body=body)
