"""Selector strategy parsing.

Supported forms (recorder conventions):
- ``css=...`` or plain CSS
- ``xpath=...``, ``xpath/...``, or anything starting with ``//`` / ``(``
- ``aria/Label`` or ``aria=Label``, optionally ``Label[role="button"]``
- ``text/Visible text`` or ``text=Visible text``
- ``pierce/css`` (CSS through open shadow roots)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

STRATEGIES = ("css", "xpath", "aria", "text", "pierce")


@dataclass(frozen=True)
class ParsedSelector:
    strategy: str
    query: str
    raw: str


def parse_selector(raw: str) -> ParsedSelector:
    selector = str(raw or "").strip()
    lower = selector.lower()
    if lower.startswith("css="):
        return ParsedSelector("css", selector[4:], selector)
    if lower.startswith("xpath=") or lower.startswith("xpath/"):
        return ParsedSelector("xpath", selector[6:], selector)
    if selector.startswith("//") or selector.startswith("("):
        return ParsedSelector("xpath", selector, selector)
    if lower.startswith("aria/") or lower.startswith("aria="):
        return ParsedSelector("aria", selector[5:], selector)
    if lower.startswith("text/") or lower.startswith("text="):
        return ParsedSelector("text", selector[5:], selector)
    if lower.startswith("pierce/"):
        return ParsedSelector("pierce", selector[7:], selector)
    return ParsedSelector("css", selector, selector)


def normalize_alternatives(selectors: Any) -> list[list[str]]:
    """Normalise a step's ``selectors`` field to a list of alternatives.

    ``"#a"`` -> ``[["#a"]]``; ``["#a", "#b"]`` -> ``[["#a"], ["#b"]]``;
    ``[["#a", "aria/A"], ["#b"]]`` is kept as-is. Empty entries are dropped.
    """
    if selectors is None:
        return []
    if isinstance(selectors, str):
        return [[selectors.strip()]] if selectors.strip() else []
    if not isinstance(selectors, list):
        return []
    out: list[list[str]] = []
    for entry in selectors:
        if isinstance(entry, str):
            if entry.strip():
                out.append([entry.strip()])
        elif isinstance(entry, list):
            group = [s.strip() for s in entry if isinstance(s, str) and s.strip()]
            if group:
                out.append(group)
    return out


__all__ = ["STRATEGIES", "ParsedSelector", "normalize_alternatives", "parse_selector"]
