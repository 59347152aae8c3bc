"""Remote debugging sessions per target.

The manager owns at most one protocol session per target and drives a small
state machine from the protocol client's event queue:

    DETACHED -> ATTACHING -> ATTACHED
    ATTACHED --(unexpected detach, script running)--> REATTACHING
    REATTACHING --(attach ok)--> ATTACHED   (new generation)
    REATTACHING --(attach failed / budget spent)--> DETACHED

Scripts take a per-target lease so two runs never interleave steps on the same
page; the lease also tells the manager whether a detach happened mid-run.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .cdp.client import EVENT_TARGET_CLOSED, ProtocolEvent
from .cdp.errors import CdpError, SessionDetached
from .cdp.page import PageSession
from .config import AgentConfig
from .errors import ElementNotFound, SessionBusy, SessionLost

logger = logging.getLogger("deskagent.session")

ATTACH_SETTLE_S = 0.1
_RECOVER_POLL_S = 0.02


class SessionState(str, Enum):
    DETACHED = "detached"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    REATTACHING = "reattaching"


@dataclass
class SessionHandle:
    target_id: str
    session_id: str
    attached_at: float
    generation: int = 1
    keep_alive_after_completion: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "targetId": self.target_id,
            "sessionId": self.session_id,
            "attachedAt": self.attached_at,
            "generation": self.generation,
            "keepAlive": self.keep_alive_after_completion,
        }


@dataclass
class _TargetEntry:
    target_id: str
    state: SessionState = SessionState.DETACHED
    handle: SessionHandle | None = None
    page: PageSession | None = None
    generation: int = 0
    attach_task: asyncio.Task | None = None
    reattach_task: asyncio.Task | None = None
    lease: asyncio.Lock = field(default_factory=asyncio.Lock)
    running: Any | None = None
    reattaches: int = 0
    lost_reason: str | None = None
    closed: bool = False


def _looks_like_url(target: str) -> bool:
    return "://" in target or target.startswith(("about:", "data:", "file:"))


class SessionManager:
    """Attach, detach and recover protocol sessions per target."""

    def __init__(
        self,
        client: Any,
        config: AgentConfig | None = None,
        *,
        settle_delay: float = ATTACH_SETTLE_S,
    ) -> None:
        self.client = client
        self.config = config or AgentConfig()
        self.settle_delay = max(0.0, float(settle_delay))
        self._targets: dict[str, _TargetEntry] = {}
        self._resolving: dict[str, asyncio.Task] = {}
        self._pump_task: asyncio.Task | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump(), name="deskagent-session-pump")

    async def close(self) -> None:
        task = self._pump_task
        self._pump_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for entry in list(self._targets.values()):
            for pending in (entry.attach_task, entry.reattach_task):
                if pending is not None and not pending.done():
                    pending.cancel()

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    async def resolve_target(self, target: str) -> str:
        """Map a target id or URL to a page target id.

        URLs match the first open page whose URL contains them; otherwise a new
        page is opened at the URL. Concurrent lookups of the same URL share one
        task so a URL never opens two pages.
        """
        target = str(target or "").strip()
        if not target:
            raise ElementNotFound("No target given")
        if not _looks_like_url(target):
            infos = await self.client.list_targets()
            if not any(info.get("targetId") == target for info in infos):
                raise ElementNotFound(f"Target {target} not found", {"target": target})
            return target

        task = self._resolving.get(target)
        if task is None or task.done():
            task = asyncio.create_task(self._find_or_open(target))
            self._resolving[target] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._resolving.get(target) is task:
                self._resolving.pop(target, None)

    async def ensure_attached(self, target: str) -> SessionHandle:
        """Return the live session for ``target``, attaching if necessary."""
        self.start()
        target_id = await self.resolve_target(target) if _looks_like_url(str(target)) else str(target)
        entry = self._entry(target_id)
        if entry.state is SessionState.ATTACHED and entry.handle is not None:
            return entry.handle
        if entry.state is SessionState.REATTACHING and entry.reattach_task is not None:
            await asyncio.wait({entry.reattach_task})
            if entry.handle is not None:
                return entry.handle
        if entry.attach_task is None or entry.attach_task.done():
            entry.attach_task = asyncio.create_task(self._attach(entry), name=f"deskagent-attach-{target_id[:8]}")
        return await asyncio.shield(entry.attach_task)

    def page(self, target_id: str) -> PageSession:
        entry = self._targets.get(target_id)
        if entry is None or entry.state is not SessionState.ATTACHED or entry.page is None:
            raise SessionDetached(target_id, "not attached")
        return entry.page

    async def find_target(self, target: str) -> str | None:
        """Like :meth:`resolve_target` but never opens a page."""
        target = str(target or "").strip()
        if not target:
            return None
        if not _looks_like_url(target):
            return target
        return await self._match_open(target)

    async def detach(self, target: str) -> bool:
        """Explicitly end the session for ``target`` (id or URL). Returns False if none was attached."""
        target_id = await self.find_target(target)
        entry = self._targets.get(target_id) if target_id is not None else None
        if entry is None:
            return False
        for pending in (entry.attach_task, entry.reattach_task):
            if pending is not None and not pending.done():
                pending.cancel()
        handle = entry.handle
        entry.handle = None
        entry.page = None
        entry.state = SessionState.DETACHED
        if handle is None:
            return False
        try:
            await self.client.detach(handle.session_id)
        except CdpError as exc:
            logger.debug("detach %s: %s", entry.target_id, exc)
        logger.info("session detached target=%s generation=%d", entry.target_id, handle.generation)
        return True

    @contextlib.asynccontextmanager
    async def script_lease(self, target_id: str, context: Any = None) -> AsyncIterator[None]:
        """Serialise scripts per target and mark the target as running."""
        entry = self._entry(target_id)
        if entry.lease.locked() and self.config.session_queue == "reject":
            raise SessionBusy(f"A script is already running on target {target_id}", {"target": target_id})
        async with entry.lease:
            entry.running = context if context is not None else True
            entry.reattaches = 0
            entry.lost_reason = None
            try:
                yield
            finally:
                entry.running = None

    async def recover(self, handle: SessionHandle, context: Any = None) -> SessionHandle:
        """Wait for the reattach that follows an unexpected detach.

        The detach error can reach the caller before the event pump has seen
        the matching event, so this polls until the state machine settles.

        Raises:
            SessionLost: the target closed, the reattach failed, or the
                per-run budget was already spent.
        """
        entry = self._entry(handle.target_id)
        deadline = time.monotonic() + self.config.reattach_backoff_s + self.config.cdp_timeout + 1.0
        while True:
            current = entry.handle
            if entry.state is SessionState.ATTACHED and current is not None and current.generation > handle.generation:
                return current
            if entry.state is SessionState.DETACHED:
                raise SessionLost(
                    entry.lost_reason or f"Session to {handle.target_id} was lost",
                    {"target": handle.target_id},
                )
            if time.monotonic() >= deadline:
                raise SessionLost(f"Timed out waiting to reattach {handle.target_id}", {"target": handle.target_id})
            await asyncio.sleep(_RECOVER_POLL_S)

    def state(self, target_id: str) -> SessionState:
        entry = self._targets.get(target_id)
        return entry.state if entry is not None else SessionState.DETACHED

    def status(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for target_id, entry in self._targets.items():
            out[target_id] = {
                "state": entry.state.value,
                "generation": entry.generation,
                "running": entry.running is not None,
                "session": entry.handle.to_dict() if entry.handle is not None else None,
                "lostReason": entry.lost_reason,
            }
        return out

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _entry(self, target_id: str) -> _TargetEntry:
        entry = self._targets.get(target_id)
        if entry is None:
            entry = _TargetEntry(target_id=target_id)
            self._targets[target_id] = entry
        return entry

    async def _match_open(self, url: str) -> str | None:
        for info in await self.client.list_targets():
            page_url = str(info.get("url") or "")
            if page_url and (url in page_url or page_url == url):
                return str(info.get("targetId"))
        return None

    async def _find_or_open(self, url: str) -> str:
        target_id = await self._match_open(url)
        if target_id is not None:
            logger.info("using open page %s for %s", target_id, url)
            return target_id
        target_id = await self.client.create_target(url)
        logger.info("opened page %s for %s", target_id, url)
        self._entry(target_id).closed = False
        return target_id

    async def _attach_once(self, entry: _TargetEntry) -> SessionHandle:
        session_id = await self.client.attach(entry.target_id)
        page = PageSession(self.client, session_id, entry.target_id)
        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)
        # A page found by id or URL may still be loading; ready pages return at once.
        if not await page.wait_ready(timeout=self.config.step_timeout):
            logger.warning("page %s not ready after %.1fs; continuing", entry.target_id, self.config.step_timeout)
        entry.generation += 1
        handle = SessionHandle(
            target_id=entry.target_id,
            session_id=session_id,
            attached_at=time.time(),
            generation=entry.generation,
        )
        entry.handle = handle
        entry.page = page
        entry.state = SessionState.ATTACHED
        return handle

    async def _attach(self, entry: _TargetEntry) -> SessionHandle:
        entry.state = SessionState.ATTACHING
        try:
            handle = await self._attach_once(entry)
        except asyncio.CancelledError:
            entry.state = SessionState.DETACHED
            raise
        except Exception as exc:  # noqa: BLE001
            entry.state = SessionState.DETACHED
            entry.handle = None
            entry.page = None
            logger.warning("attach to %s failed: %s", entry.target_id, exc)
            raise SessionLost(f"Could not attach to {entry.target_id}: {exc}", {"target": entry.target_id}) from exc
        logger.info("session attached target=%s generation=%d", entry.target_id, handle.generation)
        return handle

    async def _reattach(self, entry: _TargetEntry, reason: str) -> None:
        await asyncio.sleep(self.config.reattach_backoff_s)
        try:
            handle = await self._attach_once(entry)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            entry.state = SessionState.DETACHED
            entry.handle = None
            entry.page = None
            entry.lost_reason = f"Reattach to {entry.target_id} failed after {reason}: {exc}"
            logger.warning("%s", entry.lost_reason)
            return
        entry.reattaches += 1
        logger.info(
            "session reattached target=%s generation=%d after %s",
            entry.target_id,
            handle.generation,
            reason,
        )

    async def _pump(self) -> None:
        while True:
            event = await self.client.events.get()
            try:
                self._on_event(event)
            except Exception:  # noqa: BLE001
                logger.exception("session event handling failed: %r", event)

    def _on_event(self, event: ProtocolEvent) -> None:
        entry = self._targets.get(event.target_id)
        if entry is None:
            return

        if event.kind == EVENT_TARGET_CLOSED:
            if entry.reattach_task is not None and not entry.reattach_task.done():
                entry.reattach_task.cancel()
            entry.closed = True
            entry.handle = None
            entry.page = None
            if entry.state is not SessionState.DETACHED:
                entry.lost_reason = f"Target {entry.target_id} was closed"
            entry.state = SessionState.DETACHED
            logger.info("target closed %s", entry.target_id)
            return

        handle = entry.handle
        if handle is None or entry.state is not SessionState.ATTACHED:
            return
        if event.session_id is not None and event.session_id != handle.session_id:
            # Stale event for a session already replaced.
            return

        entry.handle = None
        entry.page = None
        if entry.running is None:
            entry.state = SessionState.DETACHED
            logger.info("session detached while idle target=%s reason=%s", entry.target_id, event.reason)
            return
        if entry.closed or entry.reattaches >= self.config.max_reattach_per_run:
            entry.state = SessionState.DETACHED
            entry.lost_reason = (
                f"Session to {entry.target_id} detached again ({event.reason}); reattach budget spent"
                if not entry.closed
                else f"Target {entry.target_id} was closed"
            )
            logger.warning("%s", entry.lost_reason)
            return

        entry.state = SessionState.REATTACHING
        logger.info("session detached mid-run target=%s reason=%s; reattaching", entry.target_id, event.reason)
        entry.reattach_task = asyncio.create_task(
            self._reattach(entry, event.reason or "detach"),
            name=f"deskagent-reattach-{entry.target_id[:8]}",
        )


__all__ = ["SessionHandle", "SessionManager", "SessionState"]
