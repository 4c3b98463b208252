"""Split accessor chains such as ``abc$def$g`` into scope, base and prefix.

A chain is a base expression followed by members selected with ``$``
(by name) or ``@`` (attribute).  The last member may be partially typed::

    >>> p = parse_path("abc$def$g")
    >>> p.scope, p.base, p.prefix
    (<Scope.NESTED: 'nested'>, 'abc$def', 'g')

Nothing here talks to a session.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass

SELECTORS = ("$", "@")

_SELECTOR_RE = re.compile(r"[$@]")


class Scope(str, enum.Enum):
    GLOBAL = "global"
    NESTED = "nested"
    DEGENERATE = "degenerate"


@dataclass(frozen=True)
class AccessorPath:
    raw: str
    tokens: tuple[str, ...]
    scope: Scope
    base: str = ""            # expression to describe remotely (nested only)
    prefix: str = ""          # partially typed trailing name
    selector: str | None = None  # last selector character, if any


def split_selectors(text: str) -> list[str]:
    """Split on every ``$`` and ``@``.  ``"a$$b"`` → ``["a", "", "b"]``."""
    return _SELECTOR_RE.split(text)


def has_selector(text: str) -> bool:
    return _SELECTOR_RE.search(text) is not None


def trim_to_trailing_selector(text: str) -> str:
    """Everything before the last selector, or ``""`` if there is none."""
    for i in range(len(text) - 1, -1, -1):
        if text[i] in SELECTORS:
            return text[:i]
    return ""


def trim_leading_selector(name: str) -> str:
    """``"$col1"`` → ``"col1"``.  Names without a selector are unchanged."""
    if name[:1] in SELECTORS:
        return name[1:]
    return name


def parse_path(text: str | None) -> AccessorPath:
    """Classify *text* as a global, nested or degenerate query."""
    raw = text or ""
    tokens = tuple(split_selectors(raw))

    if not raw or not has_selector(raw):
        return AccessorPath(raw=raw, tokens=tokens, scope=Scope.GLOBAL, prefix=raw)

    if not tokens[0]:
        # "$", "$$", "@x" ... a chain with no base to evaluate
        return AccessorPath(raw=raw, tokens=tokens, scope=Scope.DEGENERATE)

    base = trim_to_trailing_selector(raw)
    return AccessorPath(
        raw=raw,
        tokens=tokens,
        scope=Scope.NESTED,
        base=base,
        prefix=tokens[-1],
        selector=raw[len(base)],
    )
