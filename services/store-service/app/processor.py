import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from . import config

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class ProcessorError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProcessorNotFound(ProcessorError):
    """Resource does not exist (yet). Never retried here."""


class ProcessorUnavailable(ProcessorError):
    """Network failure, timeout or 5xx after all retries."""


class ProcessorClient:
    """Thin async client for the payment processor REST API."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        access_token: str = "",
        retries: int = 3,
        retry_delay: float = 3.0,
    ):
        self._http = http
        self._access_token = access_token
        self._retries = max(1, retries)
        self._retry_delay = retry_delay

    def _headers(self) -> dict:
        if not self._access_token:
            return {}
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _request(self, method: str, path: str, *, retries: Optional[int] = None, **kwargs) -> Dict[str, Any]:
        attempts = self._retries if retries is None else max(1, retries)
        last_error: ProcessorError = ProcessorUnavailable(f"{method} {path} was not attempted")

        for attempt in range(1, attempts + 1):
            try:
                r = await self._http.request(method, path, headers=self._headers(), **kwargs)
            except httpx.TimeoutException:
                last_error = ProcessorUnavailable(f"{method} {path} timed out")
            except httpx.RequestError as e:
                last_error = ProcessorUnavailable(f"{method} {path} failed: {e!r}")
            else:
                if r.status_code == 404:
                    raise ProcessorNotFound(f"{path} not found", status_code=404)
                if r.status_code >= 500:
                    last_error = ProcessorUnavailable(
                        f"{method} {path} returned {r.status_code}", status_code=r.status_code
                    )
                elif r.status_code >= 400:
                    raise ProcessorError(f"{method} {path} returned {r.status_code}", status_code=r.status_code)
                else:
                    try:
                        return r.json()
                    except ValueError:
                        raise ProcessorError(f"{method} {path} returned invalid JSON", status_code=r.status_code)

            if attempt < attempts:
                logger.warning("processor call failed attempt=%s/%s error=%s", attempt, attempts, last_error)
                await asyncio.sleep(self._retry_delay)

        raise last_error

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/payments/{payment_id}")

    async def get_merchant_order(self, merchant_order_id: str) -> Dict[str, Any]:
        """
        Fetch a merchant order, waiting (within the retry bound) for its
        payments list to be populated.
        """
        data: Dict[str, Any] = {}
        for attempt in range(1, self._retries + 1):
            data = await self._request("GET", f"/merchant_orders/{merchant_order_id}")
            if data.get("payments"):
                return data
            if attempt < self._retries:
                logger.info("merchant_order %s has no payments yet, retrying", merchant_order_id)
                await asyncio.sleep(self._retry_delay)
        return data

    async def create_preference(self, body: Dict[str, Any]) -> Dict[str, Any]:
        # not retried: a retry after a lost response would create a second checkout
        return await self._request("POST", "/checkout/preferences", retries=1, json=body)

    async def create_preapproval(self, body: Dict[str, Any]) -> Dict[str, Any]:
        # recurring subscription; sent once for the same reason as preferences
        return await self._request("POST", "/preapproval", retries=1, json=body)

    async def get_preapproval(self, preapproval_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/preapproval/{preapproval_id}")

    async def update_preapproval(self, preapproval_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PUT", f"/preapproval/{preapproval_id}", json=body)


def build_client(http: Optional[httpx.AsyncClient] = None) -> ProcessorClient:
    if http is None:
        http = httpx.AsyncClient(base_url=config.PROCESSOR_BASE_URL, timeout=config.PROCESSOR_TIMEOUT)
    return ProcessorClient(
        http,
        access_token=config.PROCESSOR_ACCESS_TOKEN,
        retries=config.PROCESSOR_RETRIES,
        retry_delay=config.PROCESSOR_RETRY_DELAY,
    )
