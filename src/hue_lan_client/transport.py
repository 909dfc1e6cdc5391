"""HTTP transport used by request queues."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol

import httpx


@dataclass(frozen=True)
class HttpResponse:
    """Status, body and headers of a completed bridge request."""

    status: int
    content: str
    headers: Mapping[str, str] = field(default_factory=dict)


class HttpTransport(Protocol):
    async def request(
        self,
        verb: str,
        url: str,
        body: Optional[str],
        content_type: Optional[str],
        timeout: float,
    ) -> HttpResponse:
        ...

    async def aclose(self) -> None:
        ...


class HttpxTransport:
    """`HttpTransport` over a shared `httpx.AsyncClient`."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            limits=httpx.Limits(
                max_connections=20,
                max_keepalive_connections=5,
                keepalive_expiry=30.0,
            ),
            follow_redirects=False,
        )

    async def request(
        self,
        verb: str,
        url: str,
        body: Optional[str],
        content_type: Optional[str],
        timeout: float,
    ) -> HttpResponse:
        headers = {"Content-Type": content_type} if body is not None and content_type else {}
        response = await self._client.request(
            verb,
            url,
            content=body.encode("utf-8") if body is not None else None,
            headers=headers,
            timeout=timeout,
        )
        return HttpResponse(
            status=response.status_code,
            content=response.text,
            headers=dict(response.headers),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
