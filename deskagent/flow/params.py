"""``{{name}}`` placeholder substitution for step payloads.

Substitution is a single pass over the original text: a replacement value is
never rescanned for placeholders. Unknown names stay verbatim.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger("deskagent.flow")

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def merge_variables(defaults: Mapping[str, Any] | None, overrides: Mapping[str, Any] | None) -> dict[str, Any]:
    """Script parameters overlaid by run-time overrides (override wins)."""
    merged: dict[str, Any] = dict(defaults or {})
    merged.update(dict(overrides or {}))
    return merged


def substitute_text(value: str, variables: Mapping[str, Any]) -> str:
    if "{{" not in value:
        return value

    def _repl(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in variables:
            replacement = variables[name]
            text = "" if replacement is None else str(replacement)
            logger.debug("substituting {{%s}} -> %r", name, text)
            return text
        logger.warning("variable {{%s}} not found in parameters; leaving it as-is", name)
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_repl, value)


def substitute(value: Any, variables: Mapping[str, Any]) -> Any:
    """Return a copy of ``value`` with every string field substituted."""
    if isinstance(value, str):
        return substitute_text(value, variables)
    if isinstance(value, dict):
        return {k: substitute(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, variables) for v in value]
    if isinstance(value, tuple):
        return tuple(substitute(v, variables) for v in value)
    return value


def placeholders(value: Any) -> set[str]:
    """All placeholder names referenced anywhere in ``value``."""
    found: set[str] = set()
    if isinstance(value, str):
        found.update(_PLACEHOLDER_RE.findall(value))
    elif isinstance(value, dict):
        for v in value.values():
            found |= placeholders(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            found |= placeholders(v)
    return found


__all__ = ["merge_variables", "placeholders", "substitute", "substitute_text"]
