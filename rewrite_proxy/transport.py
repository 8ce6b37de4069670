"""
Fetching upstream resources for the gateway route.

The rewriting core never talks to the network itself; a Transport does. The
default HttpxTransport forwards one request with httpx and hands the buffered
body back for rewriting. Redirects are not followed so ``Location`` can be
pointed back through the gateway.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import httpx
from opentelemetry import trace

from rewrite_proxy.errors import UpstreamError
from rewrite_proxy.middleware.pipeline import ExchangeRequest

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# httpx decodes the body, so the upstream framing no longer applies
STRIPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding", "content-length"}


@dataclass
class UpstreamResponse:
    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""


class Transport(ABC):
    @abstractmethod
    async def fetch(
        self,
        target_url: str,
        request: ExchangeRequest,
        body: Optional[bytes] = None,
        proxy: Optional[str] = None,
    ) -> UpstreamResponse:
        pass

    async def aclose(self) -> None:
        pass


class HttpxTransport(Transport):
    def __init__(self, timeout: float = 300, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=False,
            )
        return self._client

    @staticmethod
    def prepare_headers(request: ExchangeRequest) -> List[Tuple[str, str]]:
        return [
            (name, value)
            for name, value in request.headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() != "content-length"
        ]

    async def _send(
        self,
        client: httpx.AsyncClient,
        target_url: str,
        request: ExchangeRequest,
        body: Optional[bytes],
    ) -> httpx.Response:
        return await client.request(
            method=request.method,
            url=target_url,
            headers=self.prepare_headers(request),
            content=body or None,
        )

    async def fetch(
        self,
        target_url: str,
        request: ExchangeRequest,
        body: Optional[bytes] = None,
        proxy: Optional[str] = None,
    ) -> UpstreamResponse:
        """
        Forward ``request`` to ``target_url``. ``proxy`` routes this single
        exchange through an outbound HTTP proxy on a short-lived client.
        """
        with tracer.start_as_current_span("upstream_fetch") as span:
            span.set_attribute("proxy.target_url", target_url)
            span.set_attribute("proxy.method", request.method)
            try:
                if proxy:
                    span.set_attribute("proxy.outbound", proxy)
                    async with httpx.AsyncClient(
                        proxy=proxy,
                        timeout=httpx.Timeout(self.timeout),
                        follow_redirects=False,
                    ) as client:
                        response = await self._send(client, target_url, request, body)
                else:
                    response = await self._send(self.client, target_url, request, body)
            except httpx.TimeoutException as e:
                logger.error(f"[Gateway] Proxy timeout for {target_url}: {e}")
                span.set_attribute("proxy.error", "timeout")
                raise UpstreamError("Gateway timeout", 504) from e
            except httpx.ConnectError as e:
                logger.error(f"[Gateway] Failed to connect to target {target_url}: {e}")
                span.set_attribute("proxy.error", "connection_failed")
                raise UpstreamError("Bad gateway - cannot connect to target", 502) from e
            except httpx.HTTPError as e:
                logger.error(f"[Gateway] Proxy error for {target_url}: {e}")
                span.set_attribute("proxy.error", str(e))
                raise UpstreamError(f"Bad gateway: {str(e)}", 502) from e

            span.set_attribute("proxy.status_code", response.status_code)
            return UpstreamResponse(
                status_code=response.status_code,
                headers=[
                    (name, value)
                    for name, value in response.headers.multi_items()
                    if name.lower() not in STRIPPED_RESPONSE_HEADERS
                ],
                body=response.content,
            )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
