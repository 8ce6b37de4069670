import re

from bs4 import BeautifulSoup, Comment, NavigableString

_PRESERVE_WHITESPACE = {"pre", "textarea", "script", "style"}
# ASCII whitespace only; \xa0 (&nbsp;) is content
_WHITESPACE = re.compile(r"[ \t\r\n\f]+")
_CSS_COMMENT = re.compile(r"/\*.*?\*/", re.S)
_CSS_PUNCTUATION = re.compile(r"[ \t\r\n\f]*([{};,>])[ \t\r\n\f]*")
# A space before ":" is significant in selectors (`div :first-child`)
_CSS_DECLARATION_BLOCK = re.compile(r"\{[^{}]*\}")
_CSS_COLON = re.compile(r"[ \t\r\n\f]*:[ \t\r\n\f]*")


def minify_css(css: str) -> str:
    css = _CSS_COMMENT.sub("", css)
    css = _WHITESPACE.sub(" ", css)
    css = _CSS_PUNCTUATION.sub(r"\1", css)
    css = _CSS_DECLARATION_BLOCK.sub(lambda m: _CSS_COLON.sub(":", m.group(0)), css)
    return css.strip()


def minify_js(js: str) -> str:
    # Line-level only; joining lines would break automatic semicolon insertion
    lines = (line.strip() for line in js.splitlines())
    return "\n".join(line for line in lines if line)


def minify_soup(soup: BeautifulSoup) -> None:
    """Minify a parsed document in place."""
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    for style in soup.find_all("style"):
        if style.string:
            style.string = minify_css(style.string)
    for script in soup.find_all("script"):
        if script.string and not script.get("src"):
            script.string = minify_js(script.string)

    for text in soup.find_all(string=True):
        if type(text) is not NavigableString:
            continue
        if any(parent.name in _PRESERVE_WHITESPACE for parent in text.parents):
            continue
        collapsed = _WHITESPACE.sub(" ", text)
        if collapsed != text:
            text.replace_with(collapsed)
