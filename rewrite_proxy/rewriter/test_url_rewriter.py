from urllib.parse import parse_qs, urlsplit

import pytest

from rewrite_proxy.rewriter.url_rewriter import URLRewriter, encode_uri_component

PROXY = "http://p"
TARGET = "https://a.com/dir/page.html"


@pytest.fixture
def rewriter():
    return URLRewriter(proxy_url=PROXY, blocked_domains=["ads.example", "tracker.net"])


def _decoded(gateway_url: str) -> str:
    return parse_qs(urlsplit(gateway_url).query)["url"][0]


class TestRewriteUrl:
    @pytest.mark.parametrize(
        "url",
        [
            "https://a.com/x",
            "http://b.org/path?q=1&r=a%20b#frag",
            "https://c.io/ünïcode/päth",
            "https://d.net:8443/a;b,c'd(e)",
        ],
    )
    def test_absolute_url_round_trips(self, rewriter, url):
        result = rewriter.rewrite_url(url, TARGET)
        assert result == f"{PROXY}/gateway?url={encode_uri_component(url)}"
        assert _decoded(result) == url

    def test_matches_encode_uri_component(self, rewriter):
        assert (
            rewriter.rewrite_url("https://a.com/x", TARGET)
            == "http://p/gateway?url=https%3A%2F%2Fa.com%2Fx"
        )

    def test_root_relative_resolves_against_origin(self, rewriter):
        assert _decoded(rewriter.rewrite_url("/bg.png", TARGET)) == "https://a.com/bg.png"

    def test_dot_relative_resolves_against_page(self, rewriter):
        assert _decoded(rewriter.rewrite_url("./img.png", TARGET)) == "https://a.com/dir/img.png"
        assert _decoded(rewriter.rewrite_url("../up.css", TARGET)) == "https://a.com/up.css"

    def test_bare_relative_resolves_against_page(self, rewriter):
        assert _decoded(rewriter.rewrite_url("next.html", TARGET)) == "https://a.com/dir/next.html"

    def test_protocol_relative_takes_target_scheme(self, rewriter):
        assert _decoded(rewriter.rewrite_url("//cdn.com/lib.js", TARGET)) == "https://cdn.com/lib.js"

    @pytest.mark.parametrize(
        "url",
        ["javascript:void(0)", "mailto:me@a.com", "data:image/png;base64,AAAA", "#top", ""],
    )
    def test_non_http_passes_through(self, rewriter, url):
        assert rewriter.rewrite_url(url, TARGET) == url

    def test_unparsable_url_passes_through(self, rewriter):
        assert rewriter.rewrite_url("http://[::1", TARGET) == "http://[::1"

    def test_relative_without_target_passes_through(self, rewriter):
        assert rewriter.rewrite_url("/x", None) == "/x"

    def test_none_passes_through(self, rewriter):
        assert rewriter.rewrite_url(None, TARGET) is None

    def test_blocked_domain_returns_unproxied_url(self, rewriter):
        assert rewriter.rewrite_url("https://ads.example/pixel", TARGET) == "https://ads.example/pixel"
        assert (
            rewriter.rewrite_url("https://cdn.tracker.net/t.js", TARGET)
            == "https://cdn.tracker.net/t.js"
        )

    def test_blocked_relative_is_resolved_but_not_proxied(self):
        rewriter = URLRewriter(proxy_url=PROXY, blocked_domains=["a.com"])
        assert rewriter.rewrite_url("/x", TARGET) == "https://a.com/x"

    def test_blocklist_respects_label_boundary(self, rewriter):
        result = rewriter.rewrite_url("https://notads.example/x", TARGET)
        assert result.startswith(f"{PROXY}/gateway?url=")

    def test_gateway_url_is_not_wrapped_twice(self, rewriter):
        once = rewriter.rewrite_url("https://a.com/x", TARGET)
        assert rewriter.rewrite_url(once, TARGET) == once

    def test_custom_gateway_path(self):
        rewriter = URLRewriter(proxy_url="https://proxy.dev/", gateway_path="/api/gateway")
        assert (
            rewriter.rewrite_url("https://a.com/", None)
            == "https://proxy.dev/api/gateway?url=https%3A%2F%2Fa.com%2F"
        )


class TestWebSocketUrl:
    def test_maps_to_ws_gateway(self, rewriter):
        assert (
            rewriter.rewrite_websocket_url("wss://chat.a.com/socket")
            == "http://p/ws?url=wss%3A%2F%2Fchat.a.com%2Fsocket"
        )

    def test_already_proxied(self, rewriter):
        url = "http://p/ws?url=wss%3A%2F%2Fx"
        assert rewriter.rewrite_websocket_url(url) == url


class TestHelpers:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("https://a.com", True),
            ("http://a.com/x?y", True),
            ("/relative", False),
            ("ftp://a.com/file", False),
            ("not a url", False),
            (42, False),
            (None, False),
        ],
    )
    def test_is_url(self, value, expected):
        assert URLRewriter.is_url(value) is expected

    def test_unwrap_gateway_url(self, rewriter):
        wrapped = rewriter.rewrite_url("https://a.com/p?q=1", TARGET)
        assert rewriter.unwrap_gateway_url(wrapped) == "https://a.com/p?q=1"

    def test_unwrap_non_gateway(self, rewriter):
        assert rewriter.unwrap_gateway_url("https://a.com/other?url=x") is None
        assert rewriter.unwrap_gateway_url(None) is None
