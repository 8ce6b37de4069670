import logging
from typing import Iterable, Optional
from urllib.parse import urljoin, urlsplit, quote, parse_qs

logger = logging.getLogger("uvicorn.error")

# Characters encodeURIComponent leaves alone
_URI_COMPONENT_SAFE = "-_.!~*'()"
_HTTP_SCHEMES = ("http", "https")


def encode_uri_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


class URLRewriter:
    """
    Translate URLs found in proxied content into gateway URLs.

    A gateway URL has the form ``{proxy_url}{gateway_path}?url=<encoded URL>``;
    the browser sends every follow-up request there instead of to the origin.
    """

    def __init__(
        self,
        proxy_url: str = "",
        blocked_domains: Optional[Iterable[str]] = None,
        gateway_path: str = "/gateway",
        ws_path: str = "/ws",
    ):
        self.proxy_url = (proxy_url or "").rstrip("/")
        self.gateway_path = gateway_path
        self.ws_path = ws_path
        self.blocked_domains = [
            d.strip().lower().lstrip(".") for d in (blocked_domains or []) if d.strip()
        ]

    @property
    def gateway_prefix(self) -> str:
        return f"{self.proxy_url}{self.gateway_path}?url="

    @property
    def websocket_prefix(self) -> str:
        return f"{self.proxy_url}{self.ws_path}?url="

    def is_blocked(self, host: str) -> bool:
        host = (host or "").lower()
        return any(host == d or host.endswith("." + d) for d in self.blocked_domains)

    @staticmethod
    def is_url(value) -> bool:
        """True for an absolute http(s) URL with a host."""
        if not isinstance(value, str) or not value:
            return False
        try:
            parts = urlsplit(value.strip())
            return parts.scheme.lower() in _HTTP_SCHEMES and bool(parts.hostname)
        except ValueError:
            return False

    def resolve(self, url: str, target_url: Optional[str]) -> Optional[str]:
        """
        Resolve ``url`` against ``target_url``. Returns None when the reference
        is relative and there is nothing to resolve it against.
        """
        parts = urlsplit(url)
        if parts.scheme:
            return url
        if not target_url:
            return None
        return urljoin(target_url, url)

    def rewrite_url(self, url, target_url: Optional[str] = None):
        if not url or not isinstance(url, str):
            return url
        stripped = url.strip()
        if not stripped or stripped.startswith("#"):
            return url
        if stripped.startswith(self.gateway_prefix) or stripped.startswith(
            self.websocket_prefix
        ):
            return url
        try:
            absolute = self.resolve(stripped, target_url)
            if absolute is None:
                return url
            parts = urlsplit(absolute)
            if parts.scheme.lower() not in _HTTP_SCHEMES or not parts.hostname:
                return url
            if self.is_blocked(parts.hostname):
                return absolute
        except ValueError as e:
            logger.debug(f"[Rewrite] Leaving unparsable URL untouched: {url!r} ({e})")
            return url
        return f"{self.gateway_prefix}{encode_uri_component(absolute)}"

    def rewrite_websocket_url(self, url):
        """Route a WebSocket URL through the ws gateway; scheme mapping is the transport's job."""
        if not url or not isinstance(url, str):
            return url
        if url.startswith(self.websocket_prefix):
            return url
        return f"{self.websocket_prefix}{encode_uri_component(url)}"

    def unwrap_gateway_url(self, url: Optional[str]) -> Optional[str]:
        """Return the original URL carried by a gateway URL, or None."""
        if not url:
            return None
        try:
            parts = urlsplit(url)
        except ValueError:
            return None
        if not parts.path.endswith(self.gateway_path):
            return None
        values = parse_qs(parts.query).get("url")
        return values[0] if values else None
