"""In-process stand-in for a browser reachable over CDP.

Pages hold a table of query -> element info; the locate script is answered by
decoding the JSON argument object appended to every page script.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from deskagent.cdp.client import EVENT_DETACHED, EVENT_TARGET_CLOSED, ProtocolEvent
from deskagent.cdp.errors import CdpError, SessionDetached


def script_args(expression: str) -> dict[str, Any] | None:
    idx = expression.rfind(')({"')
    if idx < 0 or not expression.endswith(")"):
        return None
    try:
        data = json.loads(expression[idx + 2 : -1])
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


@dataclass
class FakePage:
    target_id: str
    url: str = "about:blank"
    # A callable is asked on every poll.
    ready_state: Any = "complete"
    elements: dict[str, dict[str, Any]] = field(default_factory=dict)
    expressions: dict[str, Any] = field(default_factory=dict)
    typed: list[tuple[str, str]] = field(default_factory=list)
    refs: dict[str, str] = field(default_factory=dict)

    def add(self, query: str, *, tag: str = "button", x: float = 10, y: float = 20, visible: bool = True) -> None:
        self.elements[query] = {
            "tagName": tag,
            "bounds": {"x": x, "y": y, "width": 100.0, "height": 40.0},
            "visible": visible,
        }


class FakeCdpClient:
    def __init__(self) -> None:
        self.pages: dict[str, FakePage] = {}
        self.events: asyncio.Queue[ProtocolEvent] = asyncio.Queue()
        self.sent: list[tuple[str, dict[str, Any], str | None]] = []
        self.locates: list[tuple[str, str]] = []
        self.attach_calls: list[str] = []
        self.created: list[str] = []
        self._sessions: dict[str, str] = {}
        self._ids = itertools.count(1)
        self.attach_delay = 0.0
        self.fail_attach: Callable[[str], bool] | None = None
        # (predicate, remaining) pairs: matching commands detach the session.
        self._detach_rules: list[list[Any]] = []

    def add_page(self, target_id: str, url: str = "about:blank") -> FakePage:
        page = FakePage(target_id, url)
        self.pages[target_id] = page
        return page

    def detach_on(self, predicate: Callable[[str, dict[str, Any]], bool], times: int = 1) -> None:
        self._detach_rules.append([predicate, times])

    def session_for(self, target_id: str) -> str | None:
        for sid, tid in self._sessions.items():
            if tid == target_id:
                return sid
        return None

    def drop_session(self, target_id: str, reason: str = "canceled_by_user") -> None:
        sid = self.session_for(target_id)
        if sid is not None:
            self._sessions.pop(sid, None)
            self.events.put_nowait(ProtocolEvent(EVENT_DETACHED, target_id, reason, sid))

    def close_target(self, target_id: str) -> None:
        sid = self.session_for(target_id)
        if sid is not None:
            self._sessions.pop(sid, None)
        self.pages.pop(target_id, None)
        self.events.put_nowait(ProtocolEvent(EVENT_TARGET_CLOSED, target_id, "target_closed"))

    # Protocol client surface

    @property
    def connected(self) -> bool:
        return True

    async def list_targets(self) -> list[dict[str, Any]]:
        return [{"targetId": p.target_id, "type": "page", "url": p.url} for p in self.pages.values()]

    async def create_target(self, url: str = "about:blank") -> str:
        target_id = f"T{len(self.pages) + 1}"
        self.add_page(target_id, url)
        self.created.append(target_id)
        return target_id

    async def attach(self, target_id: str) -> str:
        self.attach_calls.append(target_id)
        if self.attach_delay:
            await asyncio.sleep(self.attach_delay)
        if target_id not in self.pages or (self.fail_attach is not None and self.fail_attach(target_id)):
            raise CdpError(f"No target with given id found: {target_id}")
        sid = f"S{next(self._ids)}"
        self._sessions[sid] = target_id
        return sid

    async def detach(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        params = dict(params or {})
        if session_id is not None and session_id not in self._sessions:
            raise SessionDetached(session_id, "unknown session")
        target_id = self._sessions.get(session_id or "", "")
        self.sent.append((method, params, session_id))
        await asyncio.sleep(0)

        for rule in self._detach_rules:
            predicate, remaining = rule
            if remaining > 0 and predicate(method, params):
                rule[1] = remaining - 1
                self.drop_session(target_id)
                raise SessionDetached(target_id, "canceled_by_user")

        page = self.pages.get(target_id)
        if method == "Runtime.evaluate" and page is not None:
            return {"result": {"type": "object", "value": self._evaluate(page, str(params.get("expression")))}}
        if method == "Page.navigate" and page is not None:
            page.url = str(params.get("url"))
            return {"frameId": "F1"}
        return {}

    def _evaluate(self, page: FakePage, expression: str) -> Any:
        if expression == "document.readyState":
            return page.ready_state() if callable(page.ready_state) else page.ready_state
        if expression in page.expressions:
            value = page.expressions[expression]
            return value() if callable(value) else value
        args = script_args(expression)
        if args is None:
            return None
        if "strategy" in args:
            query = str(args.get("query"))
            self.locates.append((str(args.get("strategy")), query))
            # Ref selectors from earlier matches resolve to the same element.
            base = page.refs.get(query, query)
            info = page.elements.get(base)
            if info is None:
                return {"found": False}
            page.refs[f'[{args.get("refAttr")}="{args.get("ref")}"]'] = base
            return {"found": True, "usedAncestor": False, **info}
        if "text" in args and "selector" in args:
            page.typed.append((page.refs.get(str(args["selector"]), str(args["selector"])), str(args["text"])))
            return {"ok": True}
        if "anyFocusable" in args:
            return True
        return {"ok": True}

    def methods(self, name: str) -> list[dict[str, Any]]:
        return [params for method, params, _sid in self.sent if method == name]
