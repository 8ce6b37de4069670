"""
Standard middleware handlers.

Each factory returns an async handler taking a MiddlewareContext. Request
handlers act on ``context.request`` before the transport dispatches upstream,
response handlers on ``context.response``/``context.body`` afterwards, and the
error handler renders whatever failure the pipeline attached to the context.
"""

import html
import logging
import math
import re
import time
from email.utils import parsedate_to_datetime
from http.cookies import CookieError, SimpleCookie
from typing import Callable, Optional
from urllib.parse import urlsplit

from rewrite_proxy.errors import RateLimitExceeded
from rewrite_proxy.middleware.pipeline import ExchangeResponse, MiddlewareContext
from rewrite_proxy.middleware.rate_limit import InMemoryRateLimitStore, RateLimitStoreBase
from rewrite_proxy.rewriter.content_rewriter import content_charset, media_type
from rewrite_proxy.rewriter.url_rewriter import URLRewriter
from rewrite_proxy.utils import mask_session_id
from rewrite_proxy.utils.exception_logging import format_exception_message, status_code_for

logger = logging.getLogger("uvicorn.error")

# Upstream headers that stop rewritten content from loading inside the proxy
BLOCKING_RESPONSE_HEADERS = (
    "strict-transport-security",
    "content-security-policy",
    "x-frame-options",
    "x-content-type-options",
    "referrer-policy",
    "permissions-policy",
)

COOKIE_PATH_PATTERN = re.compile(r"(;\s*path\s*=\s*)[^;]*", re.I)
ABSOLUTE_URL_PATTERN = re.compile(r"""https?://[^\s"'<>()]+""")

TEXTUAL_CONTENT_TYPES = (
    ("text/html", "text/html"),
    ("text/css", "text/css"),
    ("javascript", "application/javascript"),
    ("application/json", "application/json"),
)


def security_headers(identifier: str = "rewrite-proxy"):
    async def _security_headers(context: MiddlewareContext) -> None:
        response = context.response
        if response is None:
            return
        for header in BLOCKING_RESPONSE_HEADERS:
            if header in response.headers:
                del response.headers[header]
        response.headers["x-proxied-by"] = identifier

    return _security_headers


def _cookie_expiry(morsel, now: float) -> Optional[float]:
    max_age = morsel.get("max-age")
    if max_age:
        try:
            return now + int(max_age)
        except ValueError:
            pass
    expires = morsel.get("expires")
    if expires:
        try:
            return parsedate_to_datetime(expires).timestamp()
        except (TypeError, ValueError):
            return None
    return None


def _mirror_cookie(session_manager, context: MiddlewareContext, set_cookie: str) -> None:
    cookie = SimpleCookie()
    try:
        cookie.load(set_cookie)
    except CookieError as e:
        logger.warning(f"[Middleware] Failed to parse cookie: {set_cookie}, error: {e}")
        return
    target_host = urlsplit(context.target_url).hostname if context.target_url else ""
    now = session_manager.clock()
    for name, morsel in cookie.items():
        session_manager.set_cookie(
            context.session.id,
            name,
            morsel.value,
            domain=(morsel.get("domain") or target_host or "").lstrip("."),
            path=morsel.get("path") or "/",
            expires=_cookie_expiry(morsel, now),
            http_only=bool(morsel.get("httponly")),
            secure=bool(morsel.get("secure")),
            same_site=morsel.get("samesite") or "Lax",
        )


def cookie_manager(session_manager=None):
    """
    Rewrite ``Set-Cookie`` paths to ``/`` so cookies stay valid under the
    proxy's single gateway path. With a session manager and an attached
    session that allows cookies, the cookies are also recorded in the
    session's jar.
    """

    async def _cookie_manager(context: MiddlewareContext) -> None:
        response = context.response
        if response is None:
            return
        cookies = response.headers.getlist("set-cookie")
        if not cookies:
            return

        session = context.session
        if session_manager is not None and session is not None and session.settings.enable_cookies:
            for set_cookie in cookies:
                _mirror_cookie(session_manager, context, set_cookie)
            logger.debug(
                f"[Middleware] Stored {len(cookies)} cookie(s) for session {mask_session_id(session.id)}"
            )

        del response.headers["set-cookie"]
        for set_cookie in cookies:
            response.headers.append("set-cookie", COOKIE_PATH_PATTERN.sub(r"\1/", set_cookie, count=1))

    return _cookie_manager


def header_correction(url_rewriter: Optional[URLRewriter] = None):
    """Make outbound Host/Referer/Origin look like they come from the target site."""

    async def _header_correction(context: MiddlewareContext) -> None:
        request = context.request
        if request is None:
            return
        target = urlsplit(context.target_url) if context.target_url else None
        target_origin = f"{target.scheme}://{target.netloc}" if target and target.netloc else None

        host = request.headers.get("host")
        if host:
            request.headers["host"] = target.netloc if target_origin else re.sub(r":\d+$", "", host)

        referer = request.headers.get("referer")
        if referer:
            original = url_rewriter.unwrap_gateway_url(referer) if url_rewriter else None
            if original:
                request.headers["referer"] = original
            elif target_origin:
                request.headers["referer"] = re.sub(r"^https?://[^/]+", target_origin, referer)

        if target_origin and "origin" in request.headers:
            request.headers["origin"] = target_origin

    return _header_correction


def _client_address(context: MiddlewareContext) -> str:
    request = context.request
    if request.client_address:
        return request.client_address
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


def rate_limiter(
    window_ms: int = 60000,
    max_requests: int = 100,
    store: Optional[RateLimitStoreBase] = None,
    clock: Callable[[], float] = time.monotonic,
):
    """Sliding-window limit per client address; raises RateLimitExceeded (429)."""
    store = store if store is not None else InMemoryRateLimitStore()
    window = window_ms / 1000.0

    async def _rate_limiter(context: MiddlewareContext) -> None:
        if context.request is None:
            return
        address = _client_address(context)
        retry_after = store.hit(address, clock(), window, max_requests)
        if retry_after is not None:
            logger.warning(f"[Middleware] Rate limit exceeded for {address}")
            raise RateLimitExceeded(address, retry_after=retry_after)

    _rate_limiter.store = store
    return _rate_limiter


def _decodes_as_utf8(body) -> bool:
    if not isinstance(body, bytes):
        return True
    try:
        body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def content_type_detection():
    """
    Normalize textual content types. A declared charset is kept; otherwise
    UTF-8 is stamped only on bodies that actually decode as UTF-8.
    """

    async def _content_type_detection(context: MiddlewareContext) -> None:
        response = context.response
        if response is None:
            return
        declared = response.headers.get("content-type") or ""
        content_type = media_type(declared)
        for marker, normalized in TEXTUAL_CONTENT_TYPES:
            if marker in content_type:
                charset = content_charset(declared)
                if charset is None and _decodes_as_utf8(context.body):
                    charset = "utf-8"
                response.headers["content-type"] = (
                    f"{normalized}; charset={charset}" if charset else normalized
                )
                return

    return _content_type_detection


def url_rewriter(rewriter: URLRewriter):
    """
    Cheap regex pass over HTML bodies replacing absolute URLs with gateway
    URLs. Use as a fallback where the full ContentRewriter is not run.
    """

    def _replace(match: re.Match) -> str:
        url = match.group(0)
        if rewriter.proxy_url and url.startswith(rewriter.proxy_url):
            return url
        return rewriter.rewrite_url(url)

    async def _url_rewriter(context: MiddlewareContext) -> None:
        response, body = context.response, context.body
        if response is None or not body:
            return
        content_type = response.headers.get("content-type") or ""
        if media_type(content_type) != "text/html":
            return
        if isinstance(body, bytes):
            charset = content_charset(content_type) or "utf-8"
            try:
                text = body.decode(charset)
            except (LookupError, UnicodeDecodeError):
                return
            context.body = ABSOLUTE_URL_PATTERN.sub(_replace, text).encode(charset)
        else:
            context.body = ABSOLUTE_URL_PATTERN.sub(_replace, body)

    return _url_rewriter


ERROR_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <title>Proxy Error</title>
    <style>
        body {{ font-family: Arial, sans-serif; text-align: center; padding: 50px; }}
        .error {{ color: #e74c3c; }}
    </style>
</head>
<body>
    <h1 class="error">Proxy Error {status_code}</h1>
    <p>{message}</p>
    <p><a href="/">Return to start page</a></p>
</body>
</html>
"""


def render_error_page(message: str, status_code: int) -> str:
    return ERROR_PAGE_TEMPLATE.format(status_code=status_code, message=html.escape(message))


def error_handler():
    async def _error_handler(context: MiddlewareContext) -> None:
        error = context.error
        if error is None:
            return
        status_code = status_code_for(error)
        if context.response is None:
            context.response = ExchangeResponse()
        response = context.response
        response.status_code = status_code
        response.headers["content-type"] = "text/html; charset=utf-8"
        retry_after = getattr(error, "retry_after", None)
        if isinstance(error, RateLimitExceeded) and retry_after is not None:
            response.headers["retry-after"] = str(max(1, math.ceil(retry_after)))
        context.body = render_error_page(format_exception_message(error), status_code)

    return _error_handler
