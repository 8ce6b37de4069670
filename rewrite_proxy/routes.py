import logging
from dataclasses import asdict
from typing import Optional
from urllib.parse import urlsplit

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from opentelemetry import trace

from rewrite_proxy.middleware import (
    ExchangeRequest,
    ExchangeResponse,
    MiddlewareContext,
    MiddlewarePipeline,
    content_type_detection,
    cookie_manager,
    error_handler,
    header_correction,
    rate_limiter,
    security_headers,
)
from rewrite_proxy.models import (
    SessionCreatedResponse,
    SessionCreateRequest,
    SessionExport,
    SessionStats,
    SessionUpdateRequest,
    SessionView,
)
from rewrite_proxy.rewriter import ContentRewriter, URLRewriter
from rewrite_proxy.session import (
    ProxySession,
    SessionManager,
    session_store,
    try_get_session_id,
)
from rewrite_proxy.transport import HttpxTransport, Transport
from rewrite_proxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
    status_code_for,
)
from rewrite_proxy.utils.traced_requests import traced_request
from rewrite_proxy.vars import (
    BLOCKED_DOMAINS,
    CUSTOM_SCRIPTS,
    ENABLE_MINIFICATION,
    GATEWAY_PATH,
    MAX_SESSIONS,
    PROXY_BASE_URL,
    PROXY_IDENTIFIER,
    PROXY_TIMEOUT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_MS,
    SECURITY_HEADERS_ENABLED,
    SESSION_CLEANUP_INTERVAL,
    SESSION_DIR,
    SESSION_FIELD_NAME,
    SESSION_QUERY_PARAM,
    SESSION_TIMEOUT,
    WS_PATH,
)

router = APIRouter()

logger = logging.getLogger("uvicorn.error")

tracer = trace.get_tracer(__name__)

GATEWAY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

# Proxy-origin headers that must not reach the upstream site; cookies are
# replayed from the session jar instead
DROPPED_REQUEST_HEADERS = (
    "content-length",
    "accept-encoding",
    "cookie",
    SESSION_FIELD_NAME.lower(),
)


def build_pipeline(
    session_manager: SessionManager, url_rewriter: URLRewriter
) -> MiddlewarePipeline:
    """
    Default middleware for the gateway. The regex ``url_rewriter`` handler is
    not registered: bodies go through the ContentRewriter after the response
    phase.
    """
    pipeline = MiddlewarePipeline()
    if RATE_LIMIT_ENABLED:
        pipeline.use(
            "request",
            rate_limiter(window_ms=RATE_LIMIT_WINDOW_MS, max_requests=RATE_LIMIT_MAX_REQUESTS),
        )
    pipeline.use("request", header_correction(url_rewriter))
    if SECURITY_HEADERS_ENABLED:
        pipeline.use("response", security_headers(PROXY_IDENTIFIER))
    pipeline.use("response", cookie_manager(session_manager))
    pipeline.use("response", content_type_detection())
    pipeline.use("error", error_handler())
    return pipeline


sessions = SessionManager(
    store=session_store(),
    max_sessions=MAX_SESSIONS,
    session_timeout=SESSION_TIMEOUT,
    cleanup_interval=SESSION_CLEANUP_INTERVAL,
    session_dir=SESSION_DIR or None,
)
url_rewriter = URLRewriter(
    proxy_url=PROXY_BASE_URL,
    blocked_domains=BLOCKED_DOMAINS,
    gateway_path=GATEWAY_PATH,
    ws_path=WS_PATH,
)
content_rewriter = ContentRewriter(
    url_rewriter,
    enable_minification=ENABLE_MINIFICATION,
    custom_scripts=CUSTOM_SCRIPTS,
)
pipeline = build_pipeline(sessions, url_rewriter)
transport: Transport = HttpxTransport(timeout=PROXY_TIMEOUT)


def optional_session_id(
    session_header: Optional[str] = Header(None, alias=SESSION_FIELD_NAME),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_FIELD_NAME),
    session_query: Optional[str] = Query(None, alias=SESSION_QUERY_PARAM),
) -> Optional[str]:
    return try_get_session_id(session_header, session_cookie, session_query)


def required_session_id(
    session_id: Optional[str] = Depends(optional_session_id),
) -> str:
    if not session_id:
        raise HTTPException(status_code=400, detail="Session ID required")
    return session_id


@router.post("/session/create")
async def create_session(payload: Optional[SessionCreateRequest] = None):
    try:
        payload = payload or SessionCreateRequest()
        session_id = sessions.create_session(
            custom_proxy=payload.custom_proxy,
            user_agent=payload.user_agent,
            headers=payload.headers,
            settings=payload.settings,
        )
        response = JSONResponse({"session_id": session_id})
        response.set_cookie(SESSION_FIELD_NAME, session_id, httponly=True, samesite="lax")
        return response
    except HTTPException as e:
        raise e
    except Exception as e:
        log_exception_with_details(logger, "[Session]", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/session/get", response_model=SessionView)
async def get_session(session_id: str = Depends(required_session_id)):
    try:
        session = sessions.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return SessionView(
            id=session.id,
            created_at=session.created_at,
            last_accessed=session.last_accessed,
            custom_proxy=session.custom_proxy,
            user_agent=session.user_agent,
            headers=session.headers,
            settings=asdict(session.settings),
            cookie_count=len(session.cookies),
            local_storage_count=len(session.local_storage),
            session_storage_count=len(session.session_storage),
        )
    except HTTPException as e:
        raise e
    except Exception as e:
        log_exception_with_details(logger, "[Session]", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/session/update")
async def update_session(
    payload: SessionUpdateRequest, session_id: str = Depends(required_session_id)
):
    try:
        if not sessions.update_session(session_id, payload.model_dump(exclude_unset=True)):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"success": True}
    except HTTPException as e:
        raise e
    except Exception as e:
        log_exception_with_details(logger, "[Session]", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.api_route("/session/delete", methods=["POST", "DELETE"])
async def delete_session(session_id: str = Depends(required_session_id)):
    try:
        if not sessions.delete_session(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        response = JSONResponse({"success": True})
        response.delete_cookie(SESSION_FIELD_NAME)
        return response
    except HTTPException as e:
        raise e
    except Exception as e:
        log_exception_with_details(logger, "[Session]", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/session/stats", response_model=SessionStats)
async def session_stats():
    return sessions.get_stats()


@router.get("/session/export")
async def export_session(session_id: str = Depends(required_session_id)):
    try:
        exported = sessions.export_session(session_id)
        if exported is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return exported
    except HTTPException as e:
        raise e
    except Exception as e:
        log_exception_with_details(logger, "[Session]", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/session/import", response_model=SessionCreatedResponse)
async def import_session(payload: SessionExport):
    try:
        session_id = sessions.import_session(payload.model_dump())
        return {"session_id": session_id}
    except HTTPException as e:
        raise e
    except Exception as e:
        log_exception_with_details(logger, "[Session]", e)
        raise HTTPException(status_code=500, detail="Internal server error")


def _outbound_request(
    request: Request, target_url: str, session: Optional[ProxySession]
) -> ExchangeRequest:
    outbound = ExchangeRequest(
        method=request.method,
        url=target_url,
        headers=[
            (name, value)
            for name, value in request.headers.items()
            if name.lower() not in DROPPED_REQUEST_HEADERS
        ],
        client_address=request.client.host if request.client else None,
    )
    if session is None:
        return outbound

    for name, value in session.headers.items():
        outbound.headers[name] = value
    if session.user_agent:
        outbound.headers["user-agent"] = session.user_agent
    if session.settings.enable_cookies:
        target = urlsplit(target_url)
        cookie_header = sessions.cookie_header(session.id, target.hostname or "", target.path or "/")
        if cookie_header:
            outbound.headers["cookie"] = cookie_header
    return outbound


async def _render_failure(context: MiddlewareContext, error: Exception) -> Response:
    """Answer with whatever the error phase rendered for ``error``."""
    if context.error is not error:
        # Failed outside the pipeline, e.g. in the transport
        context.error = error
        try:
            await pipeline.execute("error", context)
        except Exception as e:
            log_exception_with_details(logger, "[Gateway] Error phase failed:", e)

    # Rendered pages are text; a bytes body is still the upstream's
    if context.response is None or not isinstance(context.body, str):
        raise HTTPException(
            status_code=status_code_for(error), detail=format_exception_message(error)
        )
    headers = {
        "content-type": context.response.headers.get("content-type", "text/html; charset=utf-8")
    }
    if "retry-after" in context.response.headers:
        headers["retry-after"] = context.response.headers["retry-after"]
    return Response(content=context.body, status_code=context.response.status_code, headers=headers)


@router.api_route(GATEWAY_PATH, methods=GATEWAY_METHODS)
async def gateway(
    request: Request,
    url: Optional[str] = Query(None),
    session_id: Optional[str] = Depends(optional_session_id),
):
    if not url:
        raise HTTPException(status_code=400, detail="Missing url parameter")
    target = urlsplit(url)
    if target.scheme not in ("http", "https") or not target.netloc:
        raise HTTPException(status_code=400, detail="Only absolute http(s) URLs can be proxied")

    session = sessions.get_session(session_id)
    context = MiddlewareContext(
        proxy_url=url_rewriter.proxy_url,
        target_url=url,
        session=session,
    )
    with traced_request(
        tracer,
        operation="gateway",
        method=request.method,
        target_url=url,
        session_id=session.id if session else None,
    ) as span:
        try:
            context.request = _outbound_request(request, url, session)
            await pipeline.execute("request", context)

            upstream = await transport.fetch(
                url,
                context.request,
                body=await request.body(),
                proxy=session.custom_proxy if session else None,
            )
            span.set_attribute("proxy.status_code", upstream.status_code)
            context.response = ExchangeResponse(
                status_code=upstream.status_code, headers=upstream.headers
            )
            context.body = upstream.body
            await pipeline.execute("response", context)

            headers = context.response.headers
            if "location" in headers:
                headers["location"] = url_rewriter.rewrite_url(headers["location"], url)
                span.set_attribute("proxy.rewritten_location", headers["location"])
            body = content_rewriter.rewrite_content(
                context.body,
                headers.get("content-type"),
                session_id=session.id if session else None,
                target_url=url,
                headers=headers,
            )
            if isinstance(body, str):
                body = body.encode("utf-8")

            response = Response(content=body or b"", status_code=context.response.status_code)
            for name, value in headers.items():
                if name.lower() != "content-length":
                    response.headers.append(name, value)
            return response
        except HTTPException as e:
            raise e
        except Exception as e:
            log_exception_with_details(logger, "[Gateway]", e)
            span.set_attribute("proxy.error", str(e))
            return await _render_failure(context, e)
