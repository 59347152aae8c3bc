"""Browser-level CDP connection with flattened target sessions.

One websocket to the browser endpoint carries every attached target: commands
for a target are tagged with its ``sessionId`` (``Target.attachToTarget`` with
``flatten: true``). Session lifecycle changes are surfaced as
:class:`ProtocolEvent` items on ``events`` so the session manager can drive its
state machine from a queue instead of nested callbacks.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..ws_helpers import _import_websockets
from .errors import CdpError, SessionDetached

logger = logging.getLogger("deskagent.cdp")

EVENT_DETACHED = "detached"
EVENT_TARGET_CLOSED = "target-closed"


@dataclass(frozen=True)
class ProtocolEvent:
    kind: str
    target_id: str
    reason: str = ""
    session_id: str | None = None


class CdpProtocolClient:
    """Async CDP client over a single browser websocket.

    The session manager and page helpers only rely on ``send``, ``attach``,
    ``detach``, ``list_targets``, ``create_target`` and ``events``; test doubles
    implement the same surface.
    """

    def __init__(
        self,
        ws_url: str,
        *,
        timeout: float = 10.0,
        connect: Callable[[str], Any] | None = None,
    ) -> None:
        self.ws_url = ws_url
        self.timeout = float(timeout)
        self._connect = connect
        self._ws: Any | None = None
        self._reader: asyncio.Task | None = None
        self._next_id = 1
        self._pending: dict[int, tuple[asyncio.Future, str | None]] = {}
        # sessionId -> targetId
        self._sessions: dict[str, str] = {}
        self.events: asyncio.Queue[ProtocolEvent] = asyncio.Queue()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        if self._ws is not None:
            return
        if self._connect is not None:
            ws = await self._connect(self.ws_url)
        else:
            websockets = _import_websockets()
            ws = await websockets.connect(self.ws_url, max_size=None, ping_interval=None)
        self._ws = ws
        self._reader = asyncio.create_task(self._read_loop(), name="deskagent-cdp-reader")
        # Needed for Target.targetDestroyed notifications.
        await self.send("Target.setDiscoverTargets", {"discover": True})
        logger.info("cdp connected %s", self.ws_url)

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        reader = self._reader
        self._reader = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        if reader is not None:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_all(CdpError("CDP connection closed"))

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a CDP command and wait for its response."""
        ws = self._ws
        if ws is None:
            raise CdpError("CDP connection is not open")
        if session_id is not None and session_id not in self._sessions:
            raise SessionDetached(session_id, "unknown session")

        msg_id = self._next_id
        self._next_id += 1
        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params
        if session_id is not None:
            msg["sessionId"] = session_id

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = (fut, session_id)
        try:
            await ws.send(json.dumps(msg))
        except Exception as exc:  # noqa: BLE001
            self._pending.pop(msg_id, None)
            raise CdpError(f"CDP send failed: {exc}") from exc

        try:
            return await asyncio.wait_for(fut, timeout=self.timeout if timeout is None else max(0.05, timeout))
        except asyncio.TimeoutError as exc:
            raise CdpError(f"CDP response timed out: method={method}") from exc
        finally:
            self._pending.pop(msg_id, None)

    async def list_targets(self) -> list[dict[str, Any]]:
        res = await self.send("Target.getTargets")
        infos = res.get("targetInfos")
        if not isinstance(infos, list):
            return []
        return [t for t in infos if isinstance(t, dict) and t.get("type") == "page"]

    async def create_target(self, url: str = "about:blank") -> str:
        res = await self.send("Target.createTarget", {"url": url})
        target_id = res.get("targetId")
        if not isinstance(target_id, str) or not target_id:
            raise CdpError("Target.createTarget returned no targetId")
        return target_id

    async def attach(self, target_id: str) -> str:
        res = await self.send("Target.attachToTarget", {"targetId": target_id, "flatten": True})
        session_id = res.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise CdpError(f"Target.attachToTarget returned no sessionId for {target_id}")
        self._sessions[session_id] = target_id
        return session_id

    async def detach(self, session_id: str) -> None:
        if session_id not in self._sessions:
            return
        try:
            await self.send("Target.detachFromTarget", {"sessionId": session_id})
        finally:
            # Explicit detach: the detachedFromTarget echo is ignored.
            self._sessions.pop(session_id, None)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    data = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if isinstance(data, dict):
                    self._on_message(data)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("cdp reader stopped: %s", exc)
        finally:
            if self._ws is ws:
                self._ws = None
            self._fail_all(CdpError("CDP connection closed"))

    def _on_message(self, data: dict[str, Any]) -> None:
        if "id" in data:
            try:
                msg_id = int(data["id"])
            except (TypeError, ValueError):
                return
            entry = self._pending.get(msg_id)
            if entry is None:
                return
            fut, _sid = entry
            if fut.done():
                return
            if "error" in data:
                err = data["error"]
                message = err.get("message") if isinstance(err, dict) else str(err)
                fut.set_exception(CdpError(str(message or "CDP error")))
            else:
                result = data.get("result")
                fut.set_result(result if isinstance(result, dict) else {})
            return

        method = data.get("method")
        params = data.get("params") if isinstance(data.get("params"), dict) else {}
        if method == "Target.detachedFromTarget":
            sid = str(params.get("sessionId") or "")
            target_id = self._sessions.pop(sid, None)
            if target_id is not None:
                self._session_gone(sid, target_id, "detached_from_target")
        elif method == "Inspector.detached":
            sid = str(data.get("sessionId") or "")
            target_id = self._sessions.pop(sid, None)
            if target_id is not None:
                self._session_gone(sid, target_id, str(params.get("reason") or "inspector_detached"))
        elif method == "Target.targetDestroyed":
            target_id = str(params.get("targetId") or "")
            gone = [sid for sid, tid in self._sessions.items() if tid == target_id]
            for sid in gone:
                self._sessions.pop(sid, None)
                self._fail_session(sid, target_id, "target_closed")
            if target_id:
                self.events.put_nowait(ProtocolEvent(EVENT_TARGET_CLOSED, target_id, "target_closed"))

    def _session_gone(self, session_id: str, target_id: str, reason: str) -> None:
        logger.info("cdp session detached target=%s reason=%s", target_id, reason)
        self._fail_session(session_id, target_id, reason)
        self.events.put_nowait(ProtocolEvent(EVENT_DETACHED, target_id, reason, session_id))

    def _fail_session(self, session_id: str, target_id: str, reason: str) -> None:
        for fut, sid in list(self._pending.values()):
            if sid == session_id and not fut.done():
                fut.set_exception(SessionDetached(target_id, reason))

    def _fail_all(self, exc: CdpError) -> None:
        sessions = list(self._sessions.items())
        self._sessions.clear()
        for fut, _sid in list(self._pending.values()):
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()
        for sid, target_id in sessions:
            self.events.put_nowait(ProtocolEvent(EVENT_DETACHED, target_id, "connection_closed", sid))


__all__ = ["EVENT_DETACHED", "EVENT_TARGET_CLOSED", "CdpProtocolClient", "ProtocolEvent"]
