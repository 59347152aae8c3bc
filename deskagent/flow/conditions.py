"""Step and loop conditions evaluated against the live page."""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger("deskagent.flow")


async def evaluate_condition(condition: dict[str, Any], page: Any, resolver: Any) -> bool:
    """Return whether ``condition`` holds right now.

    Forms:
    - ``{"operator": "exists", "field" | "selectors": ...}``: a single resolver pass
    - ``{"operator": "equals" | "contains", "expression": js, "value": v}``
    - ``{"operator": "truthy", "expression": js}``
    Any form accepts ``"negate": true``.
    """
    op = str(condition.get("operator") or "truthy").lower()
    if op == "exists":
        selectors = condition.get("selectors") or condition.get("field")
        result = await resolver.exists(page, selectors)
    else:
        actual = await page.evaluate(str(condition.get("expression") or "undefined"))
        expected = condition.get("value")
        if op == "equals":
            result = _equals(actual, expected)
        elif op == "contains":
            result = str(expected if expected is not None else "") in _as_text(actual)
        else:
            result = bool(actual)
    if condition.get("negate") is True:
        result = not result
    logger.debug("condition %s -> %s", op, result)
    return result


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    # Substituted values arrive as strings; compare across that boundary.
    if isinstance(expected, str) and not isinstance(actual, str):
        return _as_text(actual) == expected
    return False


__all__ = ["evaluate_condition"]
