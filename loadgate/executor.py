"""Request executor interface and its httpx implementation."""

import json
import logging
import time
from typing import Any, Dict, Optional, Protocol

import httpx

from loadgate.models import RequestResult

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "loadgate/0.1",
    "Accept": "application/json",
}


class RequestExecutor(Protocol):
    """Anything that can issue one request and report how it went.

    Implementations must not raise for transport problems; they report them
    through ``RequestResult.error`` instead.
    """

    async def execute(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: float = 30.0,
    ) -> RequestResult:
        ...


def encode_body(body: Any) -> Optional[bytes]:
    if body is None:
        return None
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    return json.dumps(body).encode("utf-8")


class HttpxExecutor:
    """Executes requests on a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
        max_connections: int = 1000,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            limits=httpx.Limits(max_connections=max_connections),
        )
        self.headers = dict(DEFAULT_HEADERS)
        if headers:
            self.headers.update(headers)

    async def execute(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: float = 30.0,
    ) -> RequestResult:
        merged = dict(self.headers)
        if headers:
            merged.update(headers)
        content = encode_body(body)
        if content is not None and not isinstance(body, (bytes, str)):
            merged.setdefault("Content-Type", "application/json")

        start = time.perf_counter()
        try:
            response = await self._client.request(
                method.upper(), url, headers=merged, content=content, timeout=timeout
            )
        except httpx.TimeoutException as exc:
            return RequestResult(
                status=0,
                latency_ms=_elapsed_ms(start),
                bytes_sent=len(content or b""),
                error=f"timeout: {exc.__class__.__name__}",
            )
        except httpx.HTTPError as exc:
            logger.debug("%s %s failed: %s", method, url, exc)
            return RequestResult(
                status=0,
                latency_ms=_elapsed_ms(start),
                bytes_sent=len(content or b""),
                error=f"{exc.__class__.__name__}: {exc}",
            )
        return RequestResult(
            status=response.status_code,
            latency_ms=_elapsed_ms(start),
            bytes_received=len(response.content),
            bytes_sent=len(content or b""),
            body=response.content,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpxExecutor":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0
