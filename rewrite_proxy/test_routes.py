import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from rewrite_proxy import routes
from rewrite_proxy.errors import UpstreamError
from rewrite_proxy.middleware import InMemoryRateLimitStore, error_handler, rate_limiter
from rewrite_proxy.middleware import MiddlewarePipeline
from rewrite_proxy.rewriter import ContentRewriter, URLRewriter
from rewrite_proxy.session import SessionManager
from rewrite_proxy.transport import Transport, UpstreamResponse
from rewrite_proxy.vars import SESSION_FIELD_NAME

PROXY = "http://p"


class FakeTransport(Transport):
    def __init__(self, response=None, error=None):
        self.response = response or UpstreamResponse(200, [("content-type", "text/plain")], b"ok")
        self.error = error
        self.calls = []

    async def fetch(self, target_url, request, body=None, proxy=None):
        self.calls.append(
            {"url": target_url, "headers": request.headers, "body": body, "proxy": proxy}
        )
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def manager():
    return SessionManager()


@pytest.fixture
def rewriter():
    return URLRewriter(proxy_url=PROXY, blocked_domains=["ads.example"])


@pytest.fixture
def app(monkeypatch, manager, rewriter):
    monkeypatch.setattr(routes, "sessions", manager)
    monkeypatch.setattr(routes, "url_rewriter", rewriter)
    monkeypatch.setattr(routes, "content_rewriter", ContentRewriter(rewriter))
    monkeypatch.setattr(routes, "pipeline", routes.build_pipeline(manager, rewriter))
    app = FastAPI()
    app.include_router(routes.router)
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def use_transport(monkeypatch, transport):
    monkeypatch.setattr(routes, "transport", transport)
    return transport


def test_create_and_get_session(client):
    response = client.post(
        "/session/create",
        json={"user_agent": "TestAgent/1.0", "settings": {"enable_cookies": False}},
    )
    assert response.status_code == 200
    session_id = response.json()["session_id"]
    assert len(session_id) == 32
    assert response.cookies.get(SESSION_FIELD_NAME) == session_id

    response = client.get("/session/get", headers={SESSION_FIELD_NAME: session_id})
    assert response.status_code == 200
    data = response.json()
    assert data["id"] == session_id
    assert data["user_agent"] == "TestAgent/1.0"
    assert data["settings"]["enable_cookies"] is False
    assert data["settings"]["enable_javascript"] is True


def test_create_without_body(client):
    response = client.post("/session/create")
    assert response.status_code == 200
    assert response.json()["session_id"]


def test_session_id_from_query_parameter(client, manager):
    session_id = manager.create_session()
    client.cookies.clear()
    response = client.get(f"/session/get?sessionId={session_id}")
    assert response.status_code == 200


def test_missing_session_id_is_400(client):
    client.cookies.clear()
    assert client.get("/session/get").status_code == 400


def test_unknown_session_is_404(client):
    response = client.get("/session/get", headers={SESSION_FIELD_NAME: "nope"})
    assert response.status_code == 404


def test_update_session_merges_settings(client, manager):
    session_id = manager.create_session()
    response = client.post(
        "/session/update",
        json={"custom_proxy": "http://upstream-proxy:8080", "settings": {"enable_websockets": False}},
        headers={SESSION_FIELD_NAME: session_id},
    )
    assert response.status_code == 200
    session = manager.get_session(session_id)
    assert session.custom_proxy == "http://upstream-proxy:8080"
    assert session.settings.enable_websockets is False
    assert session.settings.enable_cookies is True


def test_update_unknown_session_is_404(client):
    response = client.post(
        "/session/update", json={"user_agent": "x"}, headers={SESSION_FIELD_NAME: "nope"}
    )
    assert response.status_code == 404


@pytest.mark.parametrize("method", ["post", "delete"])
def test_delete_session(client, manager, method):
    session_id = manager.create_session()
    response = getattr(client, method)("/session/delete", headers={SESSION_FIELD_NAME: session_id})
    assert response.status_code == 200
    assert manager.get_session(session_id) is None
    response = getattr(client, method)("/session/delete", headers={SESSION_FIELD_NAME: session_id})
    assert response.status_code == 404


def test_stats_mask_session_ids(client, manager):
    session_id = manager.create_session()
    response = client.get("/session/stats")
    assert response.status_code == 200
    stats = response.json()
    assert stats["total_sessions"] == 1
    assert stats["max_sessions"] == manager.max_sessions
    assert stats["sessions"][0]["id"] != session_id
    assert stats["sessions"][0]["id"].startswith(session_id[:4])


def test_export_then_import(client, manager):
    session_id = manager.create_session(user_agent="UA")
    manager.set_cookie(session_id, "sid", "abc", domain="a.com")
    manager.set_local_storage(session_id, "k", "v")

    exported = client.get("/session/export", headers={SESSION_FIELD_NAME: session_id}).json()
    assert exported["id"] == session_id
    manager.delete_session(session_id)

    response = client.post("/session/import", json=exported)
    assert response.status_code == 200
    assert response.json()["session_id"] == session_id
    assert manager.get_cookies(session_id, "a.com", "/") == ["sid=abc"]
    assert manager.get_local_storage(session_id, "k") == "v"
    assert manager.get_session(session_id).user_agent == "UA"


def test_export_unknown_session_is_404(client):
    response = client.get("/session/export", headers={SESSION_FIELD_NAME: "nope"})
    assert response.status_code == 404


def test_gateway_requires_url(client):
    assert client.get("/gateway").status_code == 400
    assert client.get("/gateway", params={"url": "ftp://a.com/file"}).status_code == 400


def test_gateway_rewrites_html(client, monkeypatch):
    transport = use_transport(
        monkeypatch,
        FakeTransport(
            UpstreamResponse(
                200,
                [
                    ("content-type", "text/html"),
                    ("content-security-policy", "default-src 'self'"),
                    ("x-frame-options", "DENY"),
                ],
                b'<html><head></head><body><a href="/about">About</a></body></html>',
            )
        ),
    )
    response = client.get("/gateway", params={"url": "https://a.com/index.html"})

    assert response.status_code == 200
    assert transport.calls[0]["url"] == "https://a.com/index.html"
    assert 'href="http://p/gateway?url=https%3A%2F%2Fa.com%2Fabout"' in response.text
    assert "content-security-policy" not in response.headers
    assert "x-frame-options" not in response.headers
    assert response.headers["x-proxied-by"]
    assert response.headers["content-type"] == "text/html; charset=utf-8"


def test_gateway_rewrites_json(client, monkeypatch):
    use_transport(
        monkeypatch,
        FakeTransport(
            UpstreamResponse(
                200,
                [("content-type", "application/json")],
                b'{"next":"https://a.com/page/2","count":3}',
            )
        ),
    )
    response = client.get("/gateway", params={"url": "https://a.com/api"})
    assert response.json() == {
        "next": "http://p/gateway?url=https%3A%2F%2Fa.com%2Fpage%2F2",
        "count": 3,
    }


def test_gateway_passes_binary_through(client, monkeypatch):
    payload = bytes(range(256))
    use_transport(
        monkeypatch, FakeTransport(UpstreamResponse(200, [("content-type", "image/png")], payload))
    )
    response = client.get("/gateway", params={"url": "https://a.com/logo.png"})
    assert response.content == payload


def test_gateway_rewrites_redirect_location(client, monkeypatch):
    use_transport(
        monkeypatch,
        FakeTransport(UpstreamResponse(302, [("location", "/login")], b"")),
    )
    response = client.get(
        "/gateway", params={"url": "https://a.com/private"}, follow_redirects=False
    )
    assert response.status_code == 302
    assert response.headers["location"] == "http://p/gateway?url=https%3A%2F%2Fa.com%2Flogin"


def test_gateway_uses_session_jar_and_overrides(client, manager, monkeypatch):
    session_id = manager.create_session(
        custom_proxy="http://corp-proxy:3128",
        user_agent="SessionAgent/2.0",
        headers={"accept-language": "de-DE"},
    )
    manager.set_cookie(session_id, "sid", "abc", domain="a.com", path="/")
    transport = use_transport(
        monkeypatch,
        FakeTransport(
            UpstreamResponse(
                200,
                [
                    ("content-type", "text/plain"),
                    ("set-cookie", "fresh=1; Path=/account"),
                ],
                b"ok",
            )
        ),
    )
    client.cookies.clear()
    response = client.get(
        "/gateway",
        params={"url": "https://www.a.com/account"},
        headers={SESSION_FIELD_NAME: session_id, "cookie": "unrelated=1"},
    )

    assert response.status_code == 200
    call = transport.calls[0]
    assert call["proxy"] == "http://corp-proxy:3128"
    assert call["headers"]["user-agent"] == "SessionAgent/2.0"
    assert call["headers"]["accept-language"] == "de-DE"
    assert call["headers"]["cookie"] == "sid=abc"
    assert SESSION_FIELD_NAME.lower() not in call["headers"]
    assert call["headers"]["host"] == "www.a.com"

    assert response.headers["set-cookie"].startswith("fresh=1; Path=/")
    assert "Path=/account" not in response.headers["set-cookie"]
    assert manager.get_session(session_id).cookies["fresh"].path == "/account"


def test_gateway_renders_transport_failure(client, monkeypatch):
    use_transport(monkeypatch, FakeTransport(error=UpstreamError("Gateway timeout", 504)))
    response = client.get("/gateway", params={"url": "https://slow.example/"})
    assert response.status_code == 504
    assert response.headers["content-type"] == "text/html; charset=utf-8"
    assert "Gateway timeout" in response.text


def test_gateway_renders_rate_limit(client, monkeypatch, manager, rewriter):
    pipeline = MiddlewarePipeline()
    pipeline.use("request", rate_limiter(window_ms=60000, max_requests=1, store=InMemoryRateLimitStore()))
    pipeline.use("error", error_handler())
    monkeypatch.setattr(routes, "pipeline", pipeline)
    use_transport(monkeypatch, FakeTransport())

    assert client.get("/gateway", params={"url": "https://a.com/"}).status_code == 200
    response = client.get("/gateway", params={"url": "https://a.com/"})
    assert response.status_code == 429
    assert response.headers["retry-after"]
    assert "Rate limit exceeded" in response.text


def test_gateway_without_error_page_falls_back_to_http_error(client, monkeypatch):
    monkeypatch.setattr(routes, "pipeline", MiddlewarePipeline())
    use_transport(monkeypatch, FakeTransport(error=UpstreamError("Bad gateway", 502)))
    response = client.get("/gateway", params={"url": "https://down.example/"})
    assert response.status_code == 502
    assert response.json()["detail"] == "Bad gateway"
