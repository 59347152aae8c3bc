"""Worker-side command handlers.

``AutomationAgent`` owns the browser connection, the session manager and the
step interpreter, and exposes them as ``WorkerHost`` handlers keyed by command
type. The browser connection is opened on first use and rebuilt if it drops.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .cdp.client import CdpProtocolClient
from .cdp.errors import CdpError
from .cdp.targets import browser_ws_url
from .commands import (
    ATTACH,
    DETACH,
    PROCESS_INTENT,
    RUN_SCRIPT,
    STATUS,
    Attach,
    Detach,
    ExecutionResult,
    ProcessIntent,
    RunScript,
    parse_command,
)
from .config import AgentConfig
from .errors import AutomationError, ElementNotFound, MalformedCommand, SessionLost
from .flow.interpreter import ExecutionContext, StepInterpreter
from .flow.script import parse_script
from .intent import CATEGORY_SCRIPT, IntentClassifier, KeywordIntentClassifier
from .relay.worker import CommandHandler, EmitEvent
from .session_manager import SessionManager
from .storage import MemoryScriptStore, ScriptStore

logger = logging.getLogger("deskagent.agent")

SessionFactory = Callable[[], Awaitable[SessionManager]]


class AutomationAgent:
    def __init__(
        self,
        config: AgentConfig | None = None,
        *,
        store: ScriptStore | None = None,
        classifier: IntentClassifier | None = None,
        sessions: SessionManager | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self.config = config or AgentConfig()
        self.store: ScriptStore = store if store is not None else MemoryScriptStore()
        self.classifier: IntentClassifier = classifier or KeywordIntentClassifier(self.store)
        self._sessions = sessions
        self._session_factory = session_factory
        self._client: CdpProtocolClient | None = None
        self._sessions_lock = asyncio.Lock()
        self._running: dict[int, ExecutionContext] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Wiring
    # ─────────────────────────────────────────────────────────────────────────

    def handlers(self) -> dict[str, CommandHandler]:
        return {
            RUN_SCRIPT: self.handle_run_script,
            PROCESS_INTENT: self.handle_process_intent,
            ATTACH: self.handle_attach,
            DETACH: self.handle_detach,
            STATUS: self.handle_status,
        }

    async def sessions(self) -> SessionManager:
        """Return the live session manager, connecting to the browser if needed."""
        async with self._sessions_lock:
            current = self._sessions
            if current is not None and (self._client is None or self._client.connected):
                return current
            if current is not None:
                logger.warning("browser connection lost; reconnecting")
                await current.close()
                self._sessions = None
            if self._session_factory is not None:
                manager = await self._session_factory()
            else:
                manager = await self._connect_browser()
            manager.start()
            self._sessions = manager
            return manager

    async def _connect_browser(self) -> SessionManager:
        try:
            ws_url = await browser_ws_url(self.config)
            client = CdpProtocolClient(ws_url, timeout=self.config.cdp_timeout)
            await client.connect()
        except (CdpError, OSError) as exc:
            raise SessionLost(f"Browser is not reachable: {exc}", {"endpoint": self.config.cdp_http_url}) from exc
        self._client = client
        return SessionManager(client, self.config)

    async def close(self) -> None:
        for ctx in list(self._running.values()):
            ctx.cancel()
        manager = self._sessions
        self._sessions = None
        if manager is not None:
            await manager.close()
        client = self._client
        self._client = None
        if client is not None:
            with contextlib.suppress(Exception):
                await client.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Command handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_run_script(self, payload: dict[str, Any], emit: EmitEvent) -> dict[str, Any]:
        command = parse_command(payload)
        if not isinstance(command, RunScript):
            raise MalformedCommand("Expected a runScript command", {"type": payload.get("type")})
        result = await self.run_script(command, emit)
        return result.to_dict()

    async def run_script(self, command: RunScript, emit: EmitEvent | None = None) -> ExecutionResult:
        doc = command.script
        if doc is None:
            doc = self.store.get(command.script_id)
            if doc is None:
                return ExecutionResult.failed(
                    ElementNotFound(f"Script {command.script_id!r} not found", {"scriptId": command.script_id}),
                    script_id=command.script_id,
                )
        try:
            script = parse_script(doc, script_id=command.script_id)
        except AutomationError as exc:
            return ExecutionResult.failed(exc, script_id=command.script_id)

        try:
            sessions = await self.sessions()
        except AutomationError as exc:
            return ExecutionResult.failed(exc, script_id=script.script_id)

        def progress(event: dict[str, Any]) -> None:
            if emit is not None:
                emit({"type": "progress", **event})

        ctx = ExecutionContext(script_id=script.script_id)
        interpreter = StepInterpreter(sessions, config=self.config)
        self._running[id(ctx)] = ctx
        try:
            return await interpreter.run(
                script,
                command.parameters,
                target=command.target,
                context=ctx,
                progress=progress,
            )
        finally:
            self._running.pop(id(ctx), None)

    async def handle_process_intent(self, payload: dict[str, Any], emit: EmitEvent) -> dict[str, Any]:
        command = parse_command(payload)
        if not isinstance(command, ProcessIntent):
            raise MalformedCommand("Expected a processIntent command", {"type": payload.get("type")})
        match = self.classifier.classify(command.text)
        out: dict[str, Any] = {"intent": match.to_dict(), "result": None}
        if match.category == CATEGORY_SCRIPT and match.script_reference:
            run = RunScript(script_id=match.script_reference, parameters=dict(match.parameters))
            out["result"] = (await self.run_script(run, emit)).to_dict()
        return out

    async def handle_attach(self, payload: dict[str, Any], emit: EmitEvent) -> dict[str, Any]:
        command = parse_command(payload)
        if not isinstance(command, Attach):
            raise MalformedCommand("Expected an attach command", {"type": payload.get("type")})
        sessions = await self.sessions()
        try:
            target_id = await sessions.resolve_target(command.target)
        except CdpError as exc:
            raise SessionLost(f"Could not reach target {command.target}: {exc}") from exc
        handle = await sessions.ensure_attached(target_id)
        return {"attached": True, "tabId": target_id, "session": handle.to_dict()}

    async def handle_detach(self, payload: dict[str, Any], emit: EmitEvent) -> dict[str, Any]:
        command = parse_command(payload)
        if not isinstance(command, Detach):
            raise MalformedCommand("Expected a detach command", {"type": payload.get("type")})
        sessions = await self.sessions()
        try:
            target_id = await sessions.find_target(command.target) or command.target
        except CdpError as exc:
            raise SessionLost(f"Could not reach target {command.target}: {exc}") from exc
        detached = await sessions.detach(target_id)
        return {"detached": detached, "tabId": target_id}

    async def handle_status(self, payload: dict[str, Any], emit: EmitEvent) -> dict[str, Any]:
        sessions = self._sessions
        return {
            "browserConnected": sessions is not None and (self._client is None or self._client.connected),
            "sessions": sessions.status() if sessions is not None else {},
            "running": sorted(ctx.script_id for ctx in self._running.values()),
        }


__all__ = ["AutomationAgent", "SessionFactory"]
