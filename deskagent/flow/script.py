"""Script documents: parsing and validation.

Scripts are validated once at load time so an unknown step kind is rejected
before anything touches the page. Step payloads keep their ``{{name}}``
placeholders; substitution happens per step at run time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import MalformedScript
from ..resolver.selectors import normalize_alternatives


class StepKind(str, Enum):
    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    HOVER = "hover"
    SCROLL = "scroll"
    WAIT_FOR_ELEMENT = "wait-for-element"
    WAIT_FOR_EXPRESSION = "wait-for-expression"
    SET_VIEWPORT = "set-viewport"
    KEY_EVENT = "key-event"
    NESTED_STEPS = "nested-steps"
    WAIT = "wait"
    SCROLL_INTO_VIEW = "scroll-into-view"
    EVALUATE = "evaluate"
    FIND_ELEMENT = "find-element"


# Keys are lowercased with "-" and "_" removed.
_KIND_ALIASES: dict[str, tuple[StepKind, dict[str, Any]]] = {
    "navigate": (StepKind.NAVIGATE, {}),
    "click": (StepKind.CLICK, {}),
    "doubleclick": (StepKind.CLICK, {"clickCount": 2}),
    "type": (StepKind.TYPE, {}),
    "change": (StepKind.TYPE, {}),
    "hover": (StepKind.HOVER, {}),
    "scroll": (StepKind.SCROLL, {}),
    "waitforelement": (StepKind.WAIT_FOR_ELEMENT, {}),
    "waitforexpression": (StepKind.WAIT_FOR_EXPRESSION, {}),
    "setviewport": (StepKind.SET_VIEWPORT, {}),
    "keyevent": (StepKind.KEY_EVENT, {}),
    "keydown": (StepKind.KEY_EVENT, {"direction": "down"}),
    "keyup": (StepKind.KEY_EVENT, {"direction": "up"}),
    "nestedsteps": (StepKind.NESTED_STEPS, {}),
    "childsteps": (StepKind.NESTED_STEPS, {}),
    "wait": (StepKind.WAIT, {}),
    "waitafter": (StepKind.WAIT, {}),
    "scrollintoview": (StepKind.SCROLL_INTO_VIEW, {}),
    "gotoelement": (StepKind.SCROLL_INTO_VIEW, {}),
    "evaluate": (StepKind.EVALUATE, {}),
    "executescript": (StepKind.EVALUATE, {}),
    "findelement": (StepKind.FIND_ELEMENT, {}),
}

_NEEDS_SELECTORS = {
    StepKind.CLICK,
    StepKind.TYPE,
    StepKind.HOVER,
    StepKind.WAIT_FOR_ELEMENT,
    StepKind.SCROLL_INTO_VIEW,
    StepKind.FIND_ELEMENT,
}

_CONDITION_OPERATORS = {"exists", "equals", "contains", "truthy"}


def _alias_key(raw: str) -> str:
    return raw.strip().lower().replace("-", "").replace("_", "")


@dataclass
class LoopSpec:
    iterations: int = 1
    # Set when iterations is a placeholder, resolved per run.
    iterations_template: str | None = None
    wait_between_ms: int = 0
    condition: dict[str, Any] | None = None
    steps: list[Step] = field(default_factory=list)


@dataclass
class Step:
    kind: StepKind
    # Payload with placeholders intact; nested step lists are parsed separately.
    raw: dict[str, Any] = field(default_factory=dict)
    selectors: list[list[str]] = field(default_factory=list)
    condition: dict[str, Any] | None = None
    loop: LoopSpec | None = None
    steps: list[Step] = field(default_factory=list)


@dataclass
class Script:
    script_id: str
    title: str = ""
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    steps: list[Step] = field(default_factory=list)
    target_url: str | None = None


def _parse_condition(raw: Any, where: str) -> dict[str, Any] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        # Bare string: truthy JS expression.
        return {"operator": "truthy", "expression": raw}
    if not isinstance(raw, dict):
        raise MalformedScript(f"{where}: condition must be an object", {"where": where})
    op = str(raw.get("operator") or ("exists" if raw.get("field") or raw.get("selectors") else "truthy")).lower()
    if op not in _CONDITION_OPERATORS:
        raise MalformedScript(f"{where}: unknown condition operator {op!r}", {"where": where})
    if op == "exists" and not (raw.get("field") or raw.get("selectors")):
        raise MalformedScript(f"{where}: 'exists' condition needs field or selectors", {"where": where})
    if op != "exists" and not isinstance(raw.get("expression"), str):
        raise MalformedScript(f"{where}: {op!r} condition needs an expression", {"where": where})
    out = dict(raw)
    out["operator"] = op
    return out


def _parse_int(value: Any, default: int, where: str, name: str) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise MalformedScript(f"{where}: {name} must be a number", {"where": where})
    try:
        return int(value)
    except (TypeError, ValueError):
        # Placeholder-bearing values are checked again after substitution.
        if isinstance(value, str) and "{{" in value:
            return default
        raise MalformedScript(f"{where}: {name} must be a number", {"where": where}) from None


def _parse_loop(raw: Any, where: str) -> LoopSpec | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise MalformedScript(f"{where}: loop must be an object", {"where": where})
    iterations = _parse_int(raw.get("iterations"), 1, where, "loop.iterations")
    raw_iterations = raw.get("iterations")
    template = raw_iterations if isinstance(raw_iterations, str) and "{{" in raw_iterations else None
    if iterations < 0:
        raise MalformedScript(f"{where}: loop.iterations must be >= 0", {"where": where})
    wait_between = raw.get("waitBetweenMs", raw.get("waitBetween"))
    return LoopSpec(
        iterations=iterations,
        iterations_template=template,
        wait_between_ms=max(0, _parse_int(wait_between, 0, where, "loop.waitBetweenMs")),
        condition=_parse_condition(raw.get("condition"), f"{where}.loop"),
        steps=parse_steps(raw.get("steps") or [], f"{where}.loop"),
    )


def parse_step(raw: Any, where: str = "steps[0]") -> Step:
    if not isinstance(raw, dict):
        raise MalformedScript(f"{where}: step must be an object", {"where": where})
    kind_raw = raw.get("type", raw.get("kind"))
    if not isinstance(kind_raw, str) or not kind_raw.strip():
        raise MalformedScript(f"{where}: step has no type", {"where": where})
    alias = _KIND_ALIASES.get(_alias_key(kind_raw))
    if alias is None:
        raise MalformedScript(f"{where}: unknown step type {kind_raw!r}", {"where": where, "type": kind_raw})
    kind, defaults = alias

    payload = {k: v for k, v in raw.items() if k not in {"steps", "loop"}}
    for key, value in defaults.items():
        payload.setdefault(key, value)

    selectors = normalize_alternatives(raw.get("selectors", raw.get("selector")))
    if kind in _NEEDS_SELECTORS and not selectors:
        raise MalformedScript(f"{where}: {kind.value} step needs selectors", {"where": where})
    if kind is StepKind.NAVIGATE and not isinstance(raw.get("url"), str):
        raise MalformedScript(f"{where}: navigate step needs a url", {"where": where})
    if kind is StepKind.WAIT_FOR_EXPRESSION and not isinstance(raw.get("expression"), str):
        raise MalformedScript(f"{where}: wait-for-expression step needs an expression", {"where": where})
    if kind is StepKind.KEY_EVENT and not isinstance(raw.get("key"), str):
        raise MalformedScript(f"{where}: key-event step needs a key", {"where": where})
    if kind is StepKind.EVALUATE and not isinstance(raw.get("expression", raw.get("code")), str):
        raise MalformedScript(f"{where}: evaluate step needs an expression", {"where": where})

    nested = raw.get("steps")
    if nested is not None and not isinstance(nested, list):
        raise MalformedScript(f"{where}: steps must be a list", {"where": where})
    return Step(
        kind=kind,
        raw=payload,
        selectors=selectors,
        condition=_parse_condition(raw.get("condition"), where),
        loop=_parse_loop(raw.get("loop"), where),
        steps=parse_steps(nested or [], where) if kind is StepKind.NESTED_STEPS else [],
    )


def parse_steps(raw: Any, where: str = "") -> list[Step]:
    if not isinstance(raw, list):
        raise MalformedScript(f"{where or 'script'}: steps must be a list", {"where": where})
    prefix = f"{where}.steps" if where else "steps"
    return [parse_step(item, f"{prefix}[{i}]") for i, item in enumerate(raw)]


def parse_script(doc: Any, *, script_id: str | None = None) -> Script:
    """Validate a script document and build the step tree.

    Raises:
        MalformedScript: unknown step kinds, missing required fields, or a
            document that is not an object.
    """
    if not isinstance(doc, dict):
        raise MalformedScript("Script document must be an object")
    params = doc.get("parameters")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise MalformedScript("Script parameters must be an object")
    target_url = doc.get("targetUrl")
    return Script(
        script_id=str(script_id or doc.get("id") or doc.get("scriptId") or doc.get("title") or "script"),
        title=str(doc.get("title") or ""),
        description=str(doc.get("description") or ""),
        parameters={str(k): v for k, v in params.items()},
        steps=parse_steps(doc.get("steps") or []),
        target_url=target_url if isinstance(target_url, str) and target_url.strip() else None,
    )


__all__ = ["LoopSpec", "Script", "Step", "StepKind", "parse_script", "parse_step", "parse_steps"]
