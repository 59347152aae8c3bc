"""Resolve selector alternatives to a live element in the page."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from ..cdp.errors import CdpError, SessionDetached
from ..config import ClickableConfig
from ..errors import ElementNotFound
from .js import build_locate_js, ref_selector
from .selectors import normalize_alternatives, parse_selector

logger = logging.getLogger("deskagent.resolver")

POLL_INTERVAL_S = 0.1


@dataclass(frozen=True)
class ElementRef:
    """A resolved element, addressable by its ref attribute."""

    ref: str
    selector: str
    strategy: str
    alternative_index: int
    tag_name: str = ""
    bounds: dict[str, float] = field(default_factory=dict)
    visible: bool = False
    used_ancestor: bool = False
    original_tag: str | None = None

    @property
    def ref_selector(self) -> str:
        return ref_selector(self.ref)

    def point(self, offset_x: float | None = None, offset_y: float | None = None) -> tuple[float, float]:
        """Viewport point for input events: the box centre, or an offset from its top-left."""
        x = float(self.bounds.get("x", 0.0))
        y = float(self.bounds.get("y", 0.0))
        width = float(self.bounds.get("width", 0.0))
        height = float(self.bounds.get("height", 0.0))
        px = x + float(offset_x) if offset_x is not None else x + width / 2
        py = y + float(offset_y) if offset_y is not None else y + height / 2
        return px, py


class ElementResolver:
    def __init__(self, clickable: ClickableConfig | None = None, *, poll_interval: float = POLL_INTERVAL_S) -> None:
        self.clickable = clickable or ClickableConfig()
        self.poll_interval = max(0.01, float(poll_interval))
        self._prefix = uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)

    def _next_ref(self) -> str:
        return f"{self._prefix}-{next(self._counter)}"

    async def resolve(
        self,
        page: Any,
        alternatives: Any,
        *,
        timeout: float,
        clickable: bool = False,
        visible: bool = False,
        scroll: bool = False,
    ) -> ElementRef:
        """Try every alternative's selectors in order until one matches.

        Each pass evaluates selectors one at a time and stops at the first
        match, so later selectors are never evaluated once an earlier one hits.
        Passes repeat every ``poll_interval`` until ``timeout`` elapses; a
        timeout of zero means a single pass.

        Raises:
            ElementNotFound: when no selector matched before the deadline.
            SessionDetached: when the target session goes away mid-resolution.
        """
        groups = normalize_alternatives(alternatives)
        if not groups:
            raise ElementNotFound("No selectors given", {"selectors": []})

        deadline = time.monotonic() + max(0.0, float(timeout))
        passes = 0
        while True:
            passes += 1
            found = await self._single_pass(page, groups, clickable=clickable, visible=visible, scroll=scroll)
            if found is not None:
                return found
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval, remaining))

        logger.info("no selector matched after %d pass(es): %s", passes, groups)
        raise ElementNotFound(
            f"No element matched any selector within {float(timeout):.1f}s",
            {"selectors": groups, "passes": passes},
        )

    async def exists(self, page: Any, alternatives: Any) -> bool:
        try:
            await self.resolve(page, alternatives, timeout=0)
        except ElementNotFound:
            return False
        return True

    async def _single_pass(
        self,
        page: Any,
        groups: list[list[str]],
        *,
        clickable: bool,
        visible: bool,
        scroll: bool,
    ) -> ElementRef | None:
        rules = self.clickable.to_dict() if clickable else None
        for index, group in enumerate(groups):
            for raw in group:
                parsed = parse_selector(raw)
                if not parsed.query:
                    continue
                ref = self._next_ref()
                expression = build_locate_js(parsed.strategy, parsed.query, ref=ref, clickable=rules, scroll=scroll)
                try:
                    data = await page.evaluate(expression)
                except SessionDetached:
                    raise
                except CdpError as exc:
                    # Execution context replaced mid-navigation: treat as no match this pass.
                    logger.debug("selector %r evaluation failed: %s", raw, exc)
                    continue
                if not isinstance(data, dict) or not data.get("found"):
                    continue
                if visible and not data.get("visible"):
                    continue
                element = ElementRef(
                    ref=ref,
                    selector=raw,
                    strategy=parsed.strategy,
                    alternative_index=index,
                    tag_name=str(data.get("tagName") or ""),
                    bounds=dict(data.get("bounds") or {}),
                    visible=bool(data.get("visible")),
                    used_ancestor=bool(data.get("usedAncestor")),
                    original_tag=data.get("originalTag"),
                )
                if element.used_ancestor:
                    logger.debug(
                        "selector %r matched <%s>, using clickable ancestor <%s> (%s)",
                        raw,
                        element.original_tag,
                        element.tag_name,
                        data.get("clickableReason"),
                    )
                else:
                    logger.debug("selector %r matched <%s>", raw, element.tag_name)
                return element
        return None


__all__ = ["ElementRef", "ElementResolver"]
