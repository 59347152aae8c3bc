"""Mapping free-text commands onto stored scripts.

Real classification lives outside this package; ``KeywordIntentClassifier``
is the fallback heuristic used when no model is available.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from .storage import ScriptStore

logger = logging.getLogger("deskagent.intent")

MATCH_THRESHOLD = 0.3

CATEGORY_SCRIPT = "script"
CATEGORY_UNKNOWN = "unknown"

_QUOTED_RE = re.compile(r"\"([^\"]+)\"|'([^']+)'")
_AFTER_WORD_RE = re.compile(r"(?:for|with|to|named?)\s+(\w+)", re.IGNORECASE)


@dataclass
class IntentMatch:
    category: str
    parameters: dict[str, Any] = field(default_factory=dict)
    script_reference: str | None = None
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "parameters": dict(self.parameters),
            "scriptReference": self.script_reference,
            "confidence": round(self.confidence, 3),
        }


class IntentClassifier(Protocol):
    def classify(self, text: str) -> IntentMatch: ...


def extract_parameters(text: str, declared: dict[str, Any] | None) -> dict[str, Any]:
    """Pull values for a script's declared parameters out of ``text``.

    A quoted string wins; otherwise the word after "for", "with", "to" or
    "named". Every declared parameter gets the same value.
    """
    if not declared:
        return {}
    quoted = _QUOTED_RE.search(text)
    value: str | None = None
    if quoted:
        value = quoted.group(1) or quoted.group(2)
    else:
        after = _AFTER_WORD_RE.search(text)
        if after:
            value = after.group(1)
    if value is None:
        return {}
    return {name: value for name in declared}


class KeywordIntentClassifier:
    """Word overlap between the command and each script's title + description."""

    def __init__(self, store: ScriptStore, *, threshold: float = MATCH_THRESHOLD) -> None:
        self.store = store
        self.threshold = float(threshold)

    def classify(self, text: str) -> IntentMatch:
        words = [w for w in str(text or "").lower().split() if w]
        if not words:
            return IntentMatch(CATEGORY_UNKNOWN)

        best: dict[str, Any] | None = None
        best_score = 0.0
        for doc in self.store.list():
            title = str(doc.get("title") or "")
            description = str(doc.get("description") or "")
            if not title and not description:
                continue
            haystack = f"{title} {description}".lower()
            score = sum(1 for w in words if w in haystack) / len(words)
            if score > best_score:
                best, best_score = doc, score

        if best is None or best_score <= self.threshold:
            logger.info("no script matched %r (best score %.2f)", text, best_score)
            return IntentMatch(CATEGORY_UNKNOWN, confidence=best_score)

        reference = str(best.get("id") or best.get("title"))
        params = best.get("parameters") if isinstance(best.get("parameters"), dict) else None
        logger.info("intent %r -> script %s (score %.2f)", text, reference, best_score)
        return IntentMatch(
            CATEGORY_SCRIPT,
            parameters=extract_parameters(text, params),
            script_reference=reference,
            confidence=best_score,
        )


__all__ = [
    "CATEGORY_SCRIPT",
    "CATEGORY_UNKNOWN",
    "IntentClassifier",
    "IntentMatch",
    "KeywordIntentClassifier",
    "extract_parameters",
]
