from .url_rewriter import URLRewriter, encode_uri_component
from .content_rewriter import ContentRewriter, RewriteContext, content_charset, media_type
from .rules import SelectorRule, CallbackRule, RewriteRule

__all__ = [
    "URLRewriter",
    "encode_uri_component",
    "ContentRewriter",
    "RewriteContext",
    "content_charset",
    "media_type",
    "SelectorRule",
    "CallbackRule",
    "RewriteRule",
]
