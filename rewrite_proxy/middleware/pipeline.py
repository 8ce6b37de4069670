import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from starlette.datastructures import MutableHeaders

from rewrite_proxy.errors import InvalidMiddlewarePhase
from rewrite_proxy.session import ProxySession
from rewrite_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

PHASES = ("request", "response", "error")


def _headers(values=None) -> MutableHeaders:
    if isinstance(values, MutableHeaders):
        return values
    if isinstance(values, list):
        return MutableHeaders(
            raw=[(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in values]
        )
    return MutableHeaders(headers=dict(values or {}))


@dataclass
class ExchangeRequest:
    method: str = "GET"
    url: str = ""
    headers: MutableHeaders = field(default_factory=MutableHeaders)
    client_address: Optional[str] = None

    def __post_init__(self):
        self.headers = _headers(self.headers)


@dataclass
class ExchangeResponse:
    status_code: int = 200
    headers: MutableHeaders = field(default_factory=MutableHeaders)

    def __post_init__(self):
        self.headers = _headers(self.headers)


@dataclass
class MiddlewareContext:
    """State for one proxied exchange, threaded through a single phase run."""

    request: Optional[ExchangeRequest] = None
    response: Optional[ExchangeResponse] = None
    body: Optional[Union[str, bytes]] = None
    proxy_url: str = ""
    target_url: Optional[str] = None
    session: Optional[ProxySession] = None
    error: Optional[BaseException] = None
    extras: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[MiddlewareContext], Union[None, Awaitable[None]]]


class MiddlewarePipeline:
    def __init__(self):
        self.middlewares: Dict[str, List[Handler]] = {phase: [] for phase in PHASES}

    def use(self, phase: str, handler: Handler) -> None:
        if phase not in self.middlewares:
            raise InvalidMiddlewarePhase(phase)
        self.middlewares[phase].append(handler)

    async def execute(self, phase: str, context: MiddlewareContext) -> MiddlewareContext:
        """
        Run ``phase`` handlers in registration order, each to completion.

        A failing handler is logged; outside the error phase the error phase
        then runs once with the failure attached to ``context.error``. The
        original failure is always re-raised to the caller.
        """
        if phase not in self.middlewares:
            raise InvalidMiddlewarePhase(phase)

        for handler in list(self.middlewares[phase]):
            try:
                result = handler(context)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log_exception_with_details(
                    logger, f"[Middleware] Error in {phase} phase ({_name(handler)}):", e
                )
                if phase != "error":
                    context.error = e
                    try:
                        await self.execute("error", context)
                    except Exception as error_phase_failure:
                        log_exception_with_details(
                            logger,
                            "[Middleware] Error phase failed while handling a failure:",
                            error_phase_failure,
                        )
                raise
        return context


def _name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or type(handler).__name__
