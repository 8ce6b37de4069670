import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry.trace import Span, Status, StatusCode, Tracer

from rewrite_proxy.utils import mask_session_id

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    method: str,
    target_url: str,
    session_id: Optional[str] = None,
) -> Iterator[Span]:
    """
    Span around one proxied exchange. The session id only ever reaches the
    span and the log in masked form. Failures escaping the block mark the
    span as errored before propagating.
    """
    masked = mask_session_id(session_id)
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("http.method", method)
        span.set_attribute("proxy.target_url", target_url)
        if session_id:
            span.set_attribute("session.id", masked)
        logger.info(f"[Gateway] {method} {target_url} (session {masked})")
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
