"""
ServiceM8 directory client.

Thin async wrapper over the ServiceM8 REST API. Every non-2xx response raises
DirectoryError carrying the upstream status and body; callers classify it.
"""

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from booking_engine.config import settings

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """A Directory call returned a non-2xx status (or failed at transport level)."""

    def __init__(self, status: int | None, body: Any, method: str = "", path: str = ""):
        self.status = status
        self.body = body
        self.method = method
        self.path = path
        super().__init__(f"ServiceM8 {method} {path} failed: HTTP {status}")


@dataclass
class DirectoryResponse:
    status: int
    data: Any
    record_id: str | None = None


class Directory(Protocol):
    async def get(self, path: str) -> DirectoryResponse: ...

    async def post(self, path: str, body: dict[str, Any]) -> DirectoryResponse: ...

    async def put(self, path: str, body: dict[str, Any]) -> DirectoryResponse: ...

    async def delete(self, path: str) -> DirectoryResponse: ...


def auth_headers(api_key: str = "", access_token: str = "") -> dict[str, str]:
    if api_key:
        return {"X-Api-Key": api_key}
    if access_token:
        return {"Authorization": f"Bearer {access_token}"}
    return {}


def _decode_body(resp: httpx.Response) -> Any:
    text = resp.text
    if not text:
        return None
    try:
        return resp.json()
    except ValueError:
        return {"raw": text}


class ServiceM8Client:
    """Directory implementation backed by httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        access_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.servicem8_base_url).rstrip("/")
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        headers.update(
            auth_headers(
                api_key if api_key is not None else settings.servicem8_api_key,
                access_token if access_token is not None else settings.servicem8_access_token,
            )
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or settings.servicem8_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ServiceM8Client":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> DirectoryResponse:
        url = "/" + path.lstrip("/")
        try:
            resp = await self._client.request(method, url, json=body)
        except httpx.HTTPError as e:
            raise DirectoryError(None, str(e), method, url) from e

        data = _decode_body(resp)
        if resp.is_error:
            logger.debug("ServiceM8 %s %s -> %s", method, url, resp.status_code)
            raise DirectoryError(resp.status_code, data, method, url)

        # Create endpoints return the new record id in a header
        return DirectoryResponse(
            status=resp.status_code,
            data=data,
            record_id=resp.headers.get("x-record-uuid"),
        )

    async def get(self, path: str) -> DirectoryResponse:
        return await self._request("GET", path)

    async def post(self, path: str, body: dict[str, Any]) -> DirectoryResponse:
        return await self._request("POST", path, body)

    async def put(self, path: str, body: dict[str, Any]) -> DirectoryResponse:
        return await self._request("PUT", path, body)

    async def delete(self, path: str) -> DirectoryResponse:
        return await self._request("DELETE", path)


def as_record_list(data: Any) -> list[dict[str, Any]]:
    """ServiceM8 lists come back bare or wrapped in {"data": [...]}."""
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        return [item for item in data["data"] if isinstance(item, dict)]
    return []
