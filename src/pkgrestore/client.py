from __future__ import annotations

from typing import Any

import httpx

from ._version import __version__
from .config import DEFAULT_TIMEOUT_S
from .errors import FeedError, FeedHTTPError


class FeedClient:
    """
    Thin async HTTP wrapper shared by all remote feeds of one run.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        headers = {"User-Agent": f"pkgrestore/{__version__}"}
        headers.update(default_headers or {})
        self._http = httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "FeedClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def request(
        self,
        *,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            resp = await self._http.request(method.upper(), url, headers=headers)
        except httpx.HTTPError as e:
            raise FeedError(f"Request failed: {url}: {e}") from e

        if resp.status_code >= 400:
            raise FeedHTTPError(resp.status_code, url, resp.text)
        return resp

    async def get_json(self, url: str, *, headers: dict[str, str] | None = None) -> Any:
        req_headers = {"Accept": "application/json"}
        req_headers.update(headers or {})
        resp = await self.request(method="GET", url=url, headers=req_headers)
        try:
            return resp.json()
        except ValueError as e:
            raise FeedError(f"Invalid JSON from {url}: {e}") from e

    async def get_bytes(self, url: str, *, headers: dict[str, str] | None = None) -> bytes:
        resp = await self.request(method="GET", url=url, headers=headers)
        return resp.content
