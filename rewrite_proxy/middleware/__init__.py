from .pipeline import (
    PHASES,
    ExchangeRequest,
    ExchangeResponse,
    MiddlewareContext,
    MiddlewarePipeline,
)
from .rate_limit import RateLimitStoreBase, InMemoryRateLimitStore
from .handlers import (
    security_headers,
    cookie_manager,
    header_correction,
    rate_limiter,
    content_type_detection,
    url_rewriter,
    error_handler,
    render_error_page,
)

__all__ = [
    "PHASES",
    "ExchangeRequest",
    "ExchangeResponse",
    "MiddlewareContext",
    "MiddlewarePipeline",
    "RateLimitStoreBase",
    "InMemoryRateLimitStore",
    "security_headers",
    "cookie_manager",
    "header_correction",
    "rate_limiter",
    "content_type_detection",
    "url_rewriter",
    "error_handler",
    "render_error_page",
]
