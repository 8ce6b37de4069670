from dataclasses import dataclass
from typing import Callable, Optional, Union

from bs4 import BeautifulSoup


@dataclass(frozen=True)
class SelectorRule:
    """Rewrite ``attribute`` on every element matching the CSS ``selector``."""

    selector: str
    attribute: str


@dataclass(frozen=True)
class CallbackRule:
    """Free-form rule; receives the parsed document and the target URL."""

    callback: Callable[[BeautifulSoup, Optional[str]], None]


RewriteRule = Union[SelectorRule, CallbackRule]


def as_rule(rule) -> RewriteRule:
    """Accept rule objects, plain callables, or ``{"selector", "attribute"}`` dicts."""
    if isinstance(rule, (SelectorRule, CallbackRule)):
        return rule
    if callable(rule):
        return CallbackRule(rule)
    if isinstance(rule, dict) and rule.get("selector") and rule.get("attribute"):
        return SelectorRule(rule["selector"], rule["attribute"])
    raise TypeError(f"Unsupported rewrite rule: {rule!r}")
