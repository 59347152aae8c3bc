"""One handler per leaf step kind, dispatched through ``HANDLERS``.

Handlers receive the already-substituted payload and a :class:`StepEnv`.
They raise on failure; the interpreter turns exceptions into results.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..config import AgentConfig
from ..errors import ElementNotFound, WaitTimeout
from ..resolver.js import (
    build_focus_js,
    build_scroll_element_js,
    build_scroll_into_view_js,
    build_type_js,
)
from ..resolver.resolver import ElementResolver
from ..resolver.selectors import normalize_alternatives
from .keys import KEY_UP_DELAY_MS, key_event_payloads
from .script import Step, StepKind

logger = logging.getLogger("deskagent.flow")

_EXPRESSION_POLL_S = 0.1


@dataclass
class StepEnv:
    sessions: Any
    target_id: str
    resolver: ElementResolver
    config: AgentConfig
    context: Any

    @property
    def page(self) -> Any:
        # Looked up per use: a reattach replaces the page session.
        return self.sessions.page(self.target_id)


Handler = Callable[[Step, dict[str, Any], StepEnv], Awaitable[None]]


def _ms(value: Any, default: float) -> float:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return default


def _timeout_s(payload: dict[str, Any], default_s: float) -> float:
    """Step ``timeout`` is in milliseconds; fall back to ``default_s`` seconds."""
    return _ms(payload.get("timeout"), default_s * 1000.0) / 1000.0


def _selectors(payload: dict[str, Any]) -> list[list[str]]:
    return normalize_alternatives(payload.get("selectors", payload.get("selector")))


def _offset(payload: dict[str, Any], name: str) -> float | None:
    value = payload.get(name)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────────────────────────────────────


async def handle_navigate(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    url = str(payload.get("url") or "")
    logger.info("navigate %s", url)
    await env.page.navigate(url, timeout=_timeout_s(payload, env.config.step_timeout))


async def handle_click(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    page = env.page
    element = await env.resolver.resolve(
        page,
        _selectors(payload),
        timeout=_timeout_s(payload, env.config.action_timeout),
        clickable=True,
        scroll=True,
    )
    x, y = element.point(_offset(payload, "offsetX"), _offset(payload, "offsetY"))
    click_count = int(_ms(payload.get("clickCount"), 1) or 1)
    await page.click(x, y, button=str(payload.get("button") or "left"), click_count=click_count)
    logger.info("clicked <%s> via %r at (%.0f, %.0f)", element.tag_name, element.selector, x, y)


async def handle_type(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    page = env.page
    element = await env.resolver.resolve(
        page,
        _selectors(payload),
        timeout=_timeout_s(payload, env.config.action_timeout),
        scroll=True,
    )
    value = payload.get("value", payload.get("text", ""))
    text = "" if value is None else str(value)
    result = await page.evaluate(build_type_js(element.ref_selector, text))
    if not isinstance(result, dict) or not result.get("ok"):
        reason = result.get("reason") if isinstance(result, dict) else None
        raise ElementNotFound(f"Could not type into {element.selector}: {reason or 'element vanished'}")
    env.context.last_focused = element.ref_selector
    logger.info("typed %d chars into <%s>", len(text), element.tag_name)


async def handle_hover(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    page = env.page
    element = await env.resolver.resolve(
        page,
        _selectors(payload),
        timeout=_timeout_s(payload, env.config.action_timeout),
        scroll=True,
    )
    x, y = element.point(_offset(payload, "offsetX"), _offset(payload, "offsetY"))
    await page.move_mouse(x, y)


async def handle_scroll(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    page = env.page
    x = _ms(payload.get("x"), 0.0)
    y = _ms(payload.get("y"), 0.0)
    selectors = _selectors(payload)
    if not selectors:
        await page.scroll_to(x, y)
        return
    element = await env.resolver.resolve(page, selectors, timeout=_timeout_s(payload, env.config.action_timeout))
    await page.evaluate(build_scroll_element_js(element.ref_selector, x, y))


async def handle_wait_for_element(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    await env.resolver.resolve(
        env.page,
        _selectors(payload),
        timeout=_timeout_s(payload, env.config.step_timeout),
        visible=payload.get("visible") is True,
    )


async def handle_wait_for_expression(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    expression = str(payload.get("expression") or "")
    timeout = _timeout_s(payload, env.config.step_timeout)
    deadline = time.monotonic() + timeout
    while True:
        # Only a literal true counts.
        if await env.page.evaluate(expression) is True:
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise WaitTimeout(f"Expression was not true within {timeout:.1f}s", {"expression": expression})
        await asyncio.sleep(min(_EXPRESSION_POLL_S, remaining))


async def handle_set_viewport(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    await env.page.set_viewport(
        int(_ms(payload.get("width"), 1280)),
        int(_ms(payload.get("height"), 720)),
        scale=_ms(payload.get("deviceScaleFactor"), 1.0) or 1.0,
        mobile=payload.get("isMobile") is True,
    )


async def handle_key_event(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    page = env.page
    selectors = _selectors(payload)
    focus_selector: str | None = None
    if selectors:
        element = await env.resolver.resolve(page, selectors, timeout=_timeout_s(payload, env.config.action_timeout))
        focus_selector = element.ref_selector
    elif isinstance(payload.get("focusSelector"), str):
        focus_selector = payload["focusSelector"]
    elif env.context.last_focused:
        focus_selector = env.context.last_focused
    focused = await page.evaluate(build_focus_js(focus_selector, any_focusable=focus_selector is None))
    if focused and focus_selector:
        env.context.last_focused = focus_selector

    events, key_up = key_event_payloads(payload)
    for params in events:
        await page.key_event(params)
    if key_up is not None:
        await asyncio.sleep(_ms(payload.get("keyUpDelay"), KEY_UP_DELAY_MS) / 1000.0)
        await page.key_event(key_up)


async def handle_wait(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    await asyncio.sleep(_ms(payload.get("duration", payload.get("value")), 1000.0) / 1000.0)


async def handle_scroll_into_view(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    page = env.page
    timeout = _timeout_s(payload, env.config.action_timeout)
    element = await env.resolver.resolve(page, _selectors(payload), timeout=timeout)
    await page.evaluate(build_scroll_into_view_js(element.ref_selector, smooth=payload.get("smooth") is True))


async def handle_evaluate(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    value = await env.page.evaluate(str(payload.get("expression", payload.get("code")) or ""))
    store_as = payload.get("storeAs")
    if isinstance(store_as, str) and store_as:
        env.context.variables[store_as] = value


async def handle_find_element(step: Step, payload: dict[str, Any], env: StepEnv) -> None:
    element = await env.resolver.resolve(
        env.page,
        _selectors(payload),
        timeout=_timeout_s(payload, env.config.action_timeout),
    )
    store_as = payload.get("storeAs")
    if isinstance(store_as, str) and store_as:
        env.context.variables[store_as] = element.ref_selector


HANDLERS: dict[StepKind, Handler] = {
    StepKind.NAVIGATE: handle_navigate,
    StepKind.CLICK: handle_click,
    StepKind.TYPE: handle_type,
    StepKind.HOVER: handle_hover,
    StepKind.SCROLL: handle_scroll,
    StepKind.WAIT_FOR_ELEMENT: handle_wait_for_element,
    StepKind.WAIT_FOR_EXPRESSION: handle_wait_for_expression,
    StepKind.SET_VIEWPORT: handle_set_viewport,
    StepKind.KEY_EVENT: handle_key_event,
    StepKind.WAIT: handle_wait,
    StepKind.SCROLL_INTO_VIEW: handle_scroll_into_view,
    StepKind.EVALUATE: handle_evaluate,
    StepKind.FIND_ELEMENT: handle_find_element,
}

# nested-steps is structural and runs in the interpreter itself.
STRUCTURAL_KINDS = frozenset({StepKind.NESTED_STEPS})


__all__ = ["HANDLERS", "STRUCTURAL_KINDS", "Handler", "StepEnv"]
