"""
HTTP client for the POS server REST API.

Responses use the ``{success, data, message}`` envelope. Transport failures
become NetworkError; a reachable server answering with an error becomes
ApiError.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from pos_sync.core.config import Settings
from pos_sync.core.exceptions import ApiError, NetworkError

logger = logging.getLogger(__name__)


def unwrap(body: Any) -> Any:
    """Return the ``data`` member of an envelope, or the body itself."""
    if isinstance(body, dict) and "success" in body:
        return body.get("data")
    return body


class ApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ApiClient":
        return cls(
            base_url=settings.API_BASE_URL,
            token=settings.API_TOKEN,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def request(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Send a request and return the parsed response body.

        Raises:
            NetworkError: the server could not be reached or timed out
            ApiError: non-2xx status, or an envelope with ``success: false``
        """
        try:
            response = await self._client.request(method.upper(), url, json=json, params=params)
        except httpx.TimeoutException as e:
            logger.warning(f"{method.upper()} {url} timed out: {e}")
            raise NetworkError(f"Request timed out: {method.upper()} {url}", timeout=True) from e
        except httpx.TransportError as e:
            logger.warning(f"{method.upper()} {url} failed: {e}")
            raise NetworkError(f"Server unreachable: {e}") from e

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = response.reason_phrase
            if isinstance(body, dict):
                message = body.get("message") or body.get("error") or message
            raise ApiError(response.status_code, message, body)

        if isinstance(body, dict) and body.get("success") is False:
            raise ApiError(response.status_code, body.get("message") or "Request failed", body)

        return body

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return unwrap(await self.request("GET", url, params=params))

    async def post(self, url: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return unwrap(await self.request("POST", url, json=json))

    async def put(self, url: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return unwrap(await self.request("PUT", url, json=json))

    async def delete(self, url: str) -> Any:
        return unwrap(await self.request("DELETE", url))

    async def send(self, method: str, url: str, json: Optional[Dict[str, Any]] = None) -> Any:
        """Send a mutating request and return the envelope data."""
        if method.upper() == "DELETE":
            return await self.delete(url)
        return unwrap(await self.request(method, url, json=json))

    async def close(self):
        await self._client.aclose()
