"""
Content rewriting for proxied responses.

Every URL found in HTML, CSS, JavaScript or JSON bodies is passed through a
URLRewriter so the browser sends follow-up requests back to the proxy. Any
failure while rewriting degrades to returning the original content: serving
the page unmodified is preferred over failing the exchange.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from bs4 import BeautifulSoup, Comment, Doctype, NavigableString, Tag
from opentelemetry import trace

from rewrite_proxy.rewriter.minify import minify_soup
from rewrite_proxy.rewriter.rules import CallbackRule, SelectorRule, as_rule
from rewrite_proxy.rewriter.scripts import (
    WEBSOCKET_SHIM,
    session_constants_script,
    storage_isolation_script,
)
from rewrite_proxy.rewriter.url_rewriter import URLRewriter
from rewrite_proxy.utils import mask_session_id
from rewrite_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

# Attributes holding a single URL, on any element
URL_ATTRIBUTES = ("href", "src", "action", "formaction", "poster")
SRCSET_ATTRIBUTES = ("srcset", "data-srcset")

CSS_URL_PATTERN = re.compile(r"""url\(\s*(['"]?)([^'")]+)\1\s*\)""", re.I)
CSS_IMPORT_PATTERN = re.compile(r"""@import\s+(['"])([^'"]+)\1""", re.I)
META_REFRESH_PATTERN = re.compile(r"(url\s*=\s*)(['\"]?)([^'\";]+)\2", re.I)
CHARSET_PARAM_PATTERN = re.compile(r"""charset\s*=\s*["']?([\w.:-]+)""", re.I)
HTML_TYPES = ("text/html", "application/xhtml+xml")

JS_FETCH_PATTERN = re.compile(r"""fetch\s*\(\s*(['"`])([^'"`]+)\1""")
JS_XHR_OPEN_PATTERN = re.compile(
    r"""\.open\s*\(\s*(['"`])([A-Za-z]+)\1\s*,\s*(['"`])([^'"`]+)\3"""
)
JS_WEBSOCKET_PATTERN = re.compile(r"""new\s+WebSocket\s*\(\s*(['"`])([^'"`]+)\1""")


def media_type(content_type: Optional[str]) -> str:
    """``text/html; charset=utf-8`` -> ``text/html``"""
    return (content_type or "").split(";")[0].strip().lower()


def content_charset(content_type: Optional[str]) -> Optional[str]:
    match = CHARSET_PARAM_PATTERN.search(content_type or "")
    return match.group(1).lower() if match else None


@dataclass(frozen=True)
class RewriteContext:
    session_id: Optional[str]
    target_url: Optional[str]
    proxy_base_url: str
    content_type: str


class ContentRewriter:
    def __init__(
        self,
        url_rewriter: URLRewriter,
        enable_minification: bool = False,
        custom_scripts: Optional[Iterable[str]] = None,
        rewrite_rules: Optional[Iterable] = None,
    ):
        self.url_rewriter = url_rewriter
        self.enable_minification = enable_minification
        self.custom_scripts = list(custom_scripts or [])
        self.rewrite_rules = [as_rule(rule) for rule in (rewrite_rules or [])]

    def rewrite_content(
        self,
        content: Union[str, bytes, None],
        content_type: Optional[str],
        session_id: Optional[str] = None,
        target_url: Optional[str] = None,
        headers: Optional[dict] = None,
    ):
        """
        Rewrite ``content`` according to its content type. Never raises.

        ``bytes`` are decoded with the charset declared in ``content_type``
        (UTF-8 when none is declared) and re-encoded with the same charset;
        content that does not decode is returned untouched. ``headers`` are the upstream
        response headers, accepted for callers that have them at hand.
        """
        if not content:
            return content

        context = RewriteContext(
            session_id=session_id,
            target_url=target_url,
            proxy_base_url=self.url_rewriter.proxy_url,
            content_type=(content_type or "").lower(),
        )
        with tracer.start_as_current_span("rewrite_content") as span:
            span.set_attribute("rewrite.content_type", context.content_type)
            if target_url:
                span.set_attribute("proxy.target_url", target_url)
            try:
                if isinstance(content, bytes):
                    charset = content_charset(content_type) or "utf-8"
                    try:
                        text = content.decode(charset)
                    except (LookupError, UnicodeDecodeError):
                        return content
                    rewritten = self._dispatch(text, context)
                    if rewritten is text:
                        return content
                    # Characters the charset lacks become HTML character references
                    if media_type(content_type) in HTML_TYPES:
                        return rewritten.encode(charset, "xmlcharrefreplace")
                    return rewritten.encode(charset)
                return self._dispatch(content, context)
            except Exception as e:
                span.set_attribute("rewrite.error", str(e))
                log_exception_with_details(
                    logger,
                    f"[Rewrite] Failed to rewrite {context.content_type or 'content'} "
                    f"from {target_url} (session {mask_session_id(session_id)}):",
                    e,
                )
                return content

    def _dispatch(self, text: str, context: RewriteContext) -> str:
        content_type = media_type(context.content_type)
        if content_type in HTML_TYPES:
            return self.rewrite_html(text, context)
        if content_type == "text/css":
            return self.rewrite_css(text, context.target_url)
        if "javascript" in content_type or "ecmascript" in content_type:
            return self.rewrite_javascript(text, context)
        if content_type == "application/json" or content_type.endswith("+json"):
            return self.rewrite_json(text, context.target_url)
        return text

    # HTML

    def rewrite_html(self, html: str, context: RewriteContext) -> str:
        soup = BeautifulSoup(html, "html.parser")
        base_url = self._consume_base_href(soup, context.target_url)

        for element in soup.find_all(True):
            self._visit_element(element, base_url, context.target_url)

        for rule in self.rewrite_rules:
            self._apply_rule(soup, rule, base_url)

        self._inject_scripts(soup, context)

        if self.enable_minification:
            minify_soup(soup)

        return str(soup)

    def _consume_base_href(self, soup: BeautifulSoup, target_url: Optional[str]) -> Optional[str]:
        """Resolve against <base href> and drop it; rewritten URLs are absolute."""
        base_url = target_url
        base = soup.find("base", href=True)
        if base is not None:
            resolved = self.url_rewriter.resolve(base["href"].strip(), target_url)
            if self.url_rewriter.is_url(resolved):
                base_url = resolved
        for element in soup.find_all("base"):
            element.decompose()
        return base_url

    def _visit_element(
        self, element: Tag, base_url: Optional[str], target_url: Optional[str] = None
    ) -> None:
        rewrite = self.url_rewriter.rewrite_url

        for attr in URL_ATTRIBUTES:
            value = element.get(attr)
            if isinstance(value, str) and value.strip():
                element[attr] = rewrite(value, base_url)

        for attr in SRCSET_ATTRIBUTES:
            value = element.get(attr)
            if isinstance(value, str) and value.strip():
                element[attr] = self._rewrite_srcset(value, base_url)

        for name, value in list(element.attrs.items()):
            if (
                name.startswith("data-")
                and name not in SRCSET_ATTRIBUTES
                and self.url_rewriter.is_url(value)
            ):
                element[name] = rewrite(value, base_url)

        style = element.get("style")
        if isinstance(style, str) and "url(" in style:
            element["style"] = self.rewrite_css(style, base_url)

        if element.name == "form" and not element.get("action"):
            # An empty action submits to the document URL, whatever <base> says
            document_url = target_url or base_url
            if document_url:
                element["action"] = rewrite(document_url, document_url)
        elif element.name == "style" and element.string:
            element.string = self.rewrite_css(element.string, base_url)
        elif element.name == "meta":
            self._rewrite_meta(element, base_url)

    def _rewrite_meta(self, meta: Tag, base_url: Optional[str]) -> None:
        content = meta.get("content")
        if not isinstance(content, str) or not content:
            return
        if self.url_rewriter.is_url(content):
            meta["content"] = self.url_rewriter.rewrite_url(content, base_url)
        elif (meta.get("http-equiv") or "").lower() == "refresh":
            meta["content"] = META_REFRESH_PATTERN.sub(
                lambda m: m.group(1)
                + self.url_rewriter.rewrite_url(m.group(3).strip(), base_url),
                content,
                count=1,
            )

    def _rewrite_srcset(self, srcset: str, base_url: Optional[str]) -> str:
        candidates = []
        for candidate in srcset.split(","):
            candidate = candidate.strip()
            if not candidate:
                continue
            url, _, descriptor = candidate.partition(" ")
            rewritten = self.url_rewriter.rewrite_url(url, base_url)
            candidates.append(f"{rewritten} {descriptor.strip()}".strip())
        return ", ".join(candidates)

    def _apply_rule(self, soup: BeautifulSoup, rule, base_url: Optional[str]) -> None:
        if isinstance(rule, CallbackRule):
            rule.callback(soup, base_url)
        elif isinstance(rule, SelectorRule):
            for element in soup.select(rule.selector):
                value = element.get(rule.attribute)
                if isinstance(value, str) and value:
                    element[rule.attribute] = self.url_rewriter.rewrite_url(value, base_url)

    def _inject_scripts(self, soup: BeautifulSoup, context: RewriteContext) -> None:
        head = soup.head
        if head is None:
            head = soup.new_tag("head")
            if soup.html is not None:
                soup.html.insert(0, head)
            else:
                soup.insert(self._prologue_length(soup), head)

        blocks = [
            self._script_tag(
                soup,
                code=session_constants_script(
                    context.session_id,
                    context.proxy_base_url,
                    context.target_url,
                    self.url_rewriter.gateway_path,
                    self.url_rewriter.ws_path,
                ),
            )
        ]
        for script in self.custom_scripts:
            if self.url_rewriter.is_url(script) or script.startswith("/"):
                blocks.append(self._script_tag(soup, src=script))
            else:
                blocks.append(self._script_tag(soup, code=script))
        blocks.append(self._script_tag(soup, code=WEBSOCKET_SHIM))

        # Ahead of the page's own head scripts so the shims are in place first
        for index, block in enumerate(blocks):
            head.insert(index, block)

    @staticmethod
    def _prologue_length(soup: BeautifulSoup) -> int:
        """Number of leading doctype, comment and blank nodes in ``soup``."""
        count = 0
        for node in soup.contents:
            if isinstance(node, (Doctype, Comment)):
                count += 1
            elif isinstance(node, NavigableString) and not node.strip():
                count += 1
            else:
                break
        return count

    @staticmethod
    def _script_tag(soup: BeautifulSoup, code: Optional[str] = None, src: Optional[str] = None) -> Tag:
        tag = soup.new_tag("script")
        if src:
            tag["src"] = src
        else:
            tag.string = code or ""
        return tag

    # CSS

    def rewrite_css(self, css: str, target_url: Optional[str]) -> str:
        rewrite = self.url_rewriter.rewrite_url

        def _url(match: re.Match) -> str:
            quote_char, url = match.group(1), match.group(2).strip()
            if url.lower().startswith("data:"):
                return match.group(0)
            quote_char = quote_char or "'"
            return f"url({quote_char}{rewrite(url, target_url)}{quote_char})"

        def _import(match: re.Match) -> str:
            quote_char, url = match.group(1), match.group(2)
            return f"@import {quote_char}{rewrite(url, target_url)}{quote_char}"

        css = CSS_URL_PATTERN.sub(_url, css)
        return CSS_IMPORT_PATTERN.sub(_import, css)

    # JavaScript

    def rewrite_javascript(self, js: str, context: RewriteContext) -> str:
        rewrite = self.url_rewriter.rewrite_url
        target_url = context.target_url

        def _is_dynamic(quote_char: str, url: str) -> bool:
            return quote_char == "`" and "${" in url

        def _fetch(match: re.Match) -> str:
            quote_char, url = match.group(1), match.group(2)
            if _is_dynamic(quote_char, url):
                return match.group(0)
            return f"fetch({quote_char}{rewrite(url, target_url)}{quote_char}"

        def _open(match: re.Match) -> str:
            method_quote, method, quote_char, url = match.groups()
            if _is_dynamic(quote_char, url):
                return match.group(0)
            return (
                f".open({method_quote}{method}{method_quote}, "
                f"{quote_char}{rewrite(url, target_url)}{quote_char}"
            )

        def _websocket(match: re.Match) -> str:
            quote_char, url = match.group(1), match.group(2)
            if _is_dynamic(quote_char, url):
                return match.group(0)
            rewritten = self.url_rewriter.rewrite_websocket_url(url)
            return f"new WebSocket({quote_char}{rewritten}{quote_char}"

        js = JS_FETCH_PATTERN.sub(_fetch, js)
        js = JS_XHR_OPEN_PATTERN.sub(_open, js)
        js = JS_WEBSOCKET_PATTERN.sub(_websocket, js)

        if context.session_id:
            js = storage_isolation_script(context.session_id) + "\n" + js
        return js

    # JSON

    def rewrite_json(self, text: str, target_url: Optional[str]) -> str:
        try:
            data = json.loads(text)
        except ValueError:
            return text
        rewritten = self._rewrite_value(data, target_url)
        return json.dumps(rewritten, ensure_ascii=False, separators=(",", ":"))

    def _rewrite_value(self, value, target_url: Optional[str]):
        if isinstance(value, str):
            if self.url_rewriter.is_url(value):
                return self.url_rewriter.rewrite_url(value, target_url)
            return value
        if isinstance(value, list):
            return [self._rewrite_value(item, target_url) for item in value]
        if isinstance(value, dict):
            return {key: self._rewrite_value(item, target_url) for key, item in value.items()}
        return value
