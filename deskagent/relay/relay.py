"""Orchestrator-side relay between ephemeral callers and the worker host.

One persistent upstream channel to the worker host is opened by a connect
factory and reused for every request. Requests arriving on ephemeral channels
are re-keyed with relay-local ids before going upstream, and responses are
mapped back to the caller's own ``requestId`` on the channel they came from.

When the upstream drops, requests already sent on it are answered with a
``RelayTimeout`` (reason ``disconnected``) and a supervisor reconnects with
backoff. Requests that arrive while the upstream is down wait for the
reconnect, bounded by their own timeout.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..errors import AutomationError, MalformedCommand, RelayDisconnected, RelayTimeout, error_from_dict
from .channel import Channel, ChannelClosed

logger = logging.getLogger("deskagent.relay")

ConnectFactory = Callable[[], Awaitable[Channel]]
EnrichHook = Callable[[dict[str, Any]], Any]

RECONNECT_INITIAL_S = 0.25
RECONNECT_MAX_S = 5.0


@dataclass
class _Mapping:
    relay_id: int
    caller_request_id: Any
    created_at: float
    # Exactly one of channel / future is set.
    channel: Channel | None = None
    future: asyncio.Future | None = None
    on_event: Callable[[dict[str, Any]], Any] | None = None
    timeout_handle: asyncio.TimerHandle | None = None
    sent_on: Channel | None = None
    # Set once the mapping is answered or dropped.
    done: asyncio.Event = field(default_factory=asyncio.Event)


class Relay:
    def __init__(
        self,
        connect: ConnectFactory,
        *,
        timeout: float = 300.0,
        enrich: EnrichHook | None = None,
        reconnect_initial: float = RECONNECT_INITIAL_S,
        reconnect_max: float = RECONNECT_MAX_S,
    ) -> None:
        self._connect = connect
        self.timeout = float(timeout)
        self._enrich = enrich
        self.reconnect_initial = float(reconnect_initial)
        self.reconnect_max = float(reconnect_max)
        self._ids = itertools.count(1)
        self._pending: dict[int, _Mapping] = {}
        self._upstream: Channel | None = None
        self._connected = asyncio.Event()
        self._supervisor: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closing = False
        self.connects = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._supervisor is None or self._supervisor.done():
            self._closing = False
            self._supervisor = asyncio.create_task(self._supervise(), name="deskagent-relay-upstream")

    async def close(self) -> None:
        self._closing = True
        supervisor = self._supervisor
        self._supervisor = None
        upstream = self._upstream
        if upstream is not None:
            await upstream.close()
        if supervisor is not None:
            supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor
        for task in list(self._tasks):
            task.cancel()
        for relay_id in list(self._pending):
            self._finish(relay_id, error=RelayDisconnected("Relay closed"))

    @property
    def connected(self) -> bool:
        return self._upstream is not None and self._connected.is_set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def status(self) -> dict[str, Any]:
        return {"connected": self.connected, "connects": self.connects, "pending": len(self._pending)}

    # ─────────────────────────────────────────────────────────────────────────
    # Callers
    # ─────────────────────────────────────────────────────────────────────────

    async def serve_ephemeral(self, channel: Channel) -> None:
        """Handle one ephemeral caller until its channel closes."""
        self.start()
        logger.info("ephemeral channel connected: %s", channel.name)
        try:
            while True:
                msg = await channel.recv()
                if msg.get("type") != "request":
                    continue
                self._spawn(self._forward_from(channel, msg))
        except ChannelClosed:
            pass
        finally:
            # Responses for a gone caller are dropped when they arrive.
            for mapping in list(self._pending.values()):
                if mapping.channel is channel:
                    self._drop(mapping.relay_id)
            logger.info("ephemeral channel closed: %s", channel.name)

    async def send(
        self,
        command: dict[str, Any],
        *,
        timeout: float | None = None,
        on_event: Callable[[dict[str, Any]], Any] | None = None,
    ) -> Any:
        """Send a command from inside the orchestrator and wait for its result."""
        self.start()
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        mapping = self._register(None, timeout, future=fut, on_event=on_event)
        self._spawn(self._forward(mapping, command))
        response = await fut
        if response.get("ok") is True:
            return response.get("result")
        raise error_from_dict(response.get("error"))

    # ─────────────────────────────────────────────────────────────────────────
    # Forwarding
    # ─────────────────────────────────────────────────────────────────────────

    def _register(
        self,
        channel: Channel | None,
        timeout: float | None,
        *,
        caller_request_id: Any = None,
        future: asyncio.Future | None = None,
        on_event: Callable[[dict[str, Any]], Any] | None = None,
    ) -> _Mapping:
        relay_id = next(self._ids)
        mapping = _Mapping(
            relay_id=relay_id,
            caller_request_id=caller_request_id,
            created_at=time.monotonic(),
            channel=channel,
            future=future,
            on_event=on_event,
        )
        wait_s = self.timeout if timeout is None else max(0.01, float(timeout))
        mapping.timeout_handle = asyncio.get_running_loop().call_later(wait_s, self._expire, relay_id, wait_s)
        self._pending[relay_id] = mapping
        return mapping

    async def _forward_from(self, channel: Channel, msg: dict[str, Any]) -> None:
        caller_id = msg.get("requestId")
        command = msg.get("command")
        timeout = msg.get("timeoutMs")
        timeout_s = float(timeout) / 1000.0 if isinstance(timeout, (int, float)) and timeout > 0 else None
        mapping = self._register(channel, timeout_s, caller_request_id=caller_id)
        await self._forward(mapping, command)

    async def _forward(self, mapping: _Mapping, command: Any) -> None:
        relay_id = mapping.relay_id
        try:
            if not isinstance(command, dict):
                raise MalformedCommand("Request has no command object")
            if self._enrich is not None:
                enriched = self._enrich(command)
                if inspect.isawaitable(enriched):
                    enriched = await enriched
                command = enriched if isinstance(enriched, dict) else command
        except AutomationError as exc:
            self._finish(relay_id, error=exc)
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception("enrich failed for request %s", relay_id)
            self._finish(relay_id, error=AutomationError(f"{type(exc).__name__}: {exc}"))
            return

        # Wait for the upstream; the mapping's own timer bounds this.
        while relay_id in self._pending:
            upstream = self._upstream
            if upstream is not None and self._connected.is_set():
                mapping.sent_on = upstream
                try:
                    await upstream.send({"type": "request", "requestId": relay_id, "command": command})
                except ChannelClosed:
                    mapping.sent_on = None
                    self._finish(relay_id, error=RelayTimeout("disconnected", {"relayId": relay_id}))
                return
            connected = asyncio.ensure_future(self._connected.wait())
            answered = asyncio.ensure_future(mapping.done.wait())
            try:
                await asyncio.wait({connected, answered}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                connected.cancel()
                answered.cancel()

    def _on_upstream(self, msg: dict[str, Any]) -> None:
        try:
            relay_id = int(msg.get("requestId"))
        except (TypeError, ValueError):
            return
        mtype = msg.get("type")
        if mtype == "response":
            if relay_id not in self._pending:
                logger.debug("late response for relay id %s dropped", relay_id)
                return
            self._finish(relay_id, response=msg)
        elif mtype == "event":
            mapping = self._pending.get(relay_id)
            if mapping is None:
                return
            event = msg.get("event") if isinstance(msg.get("event"), dict) else {}
            if mapping.channel is not None:
                self._spawn(
                    self._deliver(
                        mapping.channel,
                        {"type": "event", "requestId": mapping.caller_request_id, "event": event},
                    )
                )
            elif mapping.on_event is not None:
                try:
                    mapping.on_event(event)
                except Exception:  # noqa: BLE001
                    logger.debug("event callback failed", exc_info=True)

    def _expire(self, relay_id: int, wait_s: float) -> None:
        if relay_id in self._pending:
            logger.warning("request %s timed out after %.1fs", relay_id, wait_s)
            self._finish(relay_id, error=RelayTimeout(f"No response within {wait_s:.1f}s", {"relayId": relay_id}))

    def _drop(self, relay_id: int) -> None:
        mapping = self._pending.pop(relay_id, None)
        if mapping is None:
            return
        mapping.done.set()
        if mapping.timeout_handle is not None:
            mapping.timeout_handle.cancel()

    def _finish(
        self,
        relay_id: int,
        *,
        response: dict[str, Any] | None = None,
        error: AutomationError | None = None,
    ) -> None:
        """Remove the mapping and answer its caller exactly once."""
        mapping = self._pending.pop(relay_id, None)
        if mapping is None:
            return
        mapping.done.set()
        if mapping.timeout_handle is not None:
            mapping.timeout_handle.cancel()
        if response is not None:
            reply = {
                "type": "response",
                "requestId": mapping.caller_request_id,
                "ok": response.get("ok") is True,
            }
            if reply["ok"]:
                reply["result"] = response.get("result")
            else:
                reply["error"] = response.get("error") if isinstance(response.get("error"), dict) else {}
        else:
            err = error or RelayTimeout("unknown failure")
            reply = {"type": "response", "requestId": mapping.caller_request_id, "ok": False, "error": err.to_dict()}

        if mapping.future is not None:
            if not mapping.future.done():
                mapping.future.set_result(reply)
        elif mapping.channel is not None:
            self._spawn(self._deliver(mapping.channel, reply))

    async def _deliver(self, channel: Channel, message: dict[str, Any]) -> None:
        try:
            await channel.send(message)
        except ChannelClosed:
            logger.debug("caller %s gone; dropping %s", channel.name, message.get("type"))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ─────────────────────────────────────────────────────────────────────────
    # Upstream supervision
    # ─────────────────────────────────────────────────────────────────────────

    async def _supervise(self) -> None:
        backoff_s = self.reconnect_initial
        while not self._closing:
            try:
                channel = await self._connect()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("upstream connect failed: %s (retry in %.2fs)", exc, backoff_s)
                await asyncio.sleep(backoff_s)
                backoff_s = min(backoff_s * 1.6, self.reconnect_max)
                continue

            backoff_s = self.reconnect_initial
            self._upstream = channel
            self.connects += 1
            self._connected.set()
            logger.info("upstream connected: %s (connection #%d)", channel.name, self.connects)
            try:
                while True:
                    msg = await channel.recv()
                    self._on_upstream(msg)
            except ChannelClosed as exc:
                logger.warning("upstream disconnected: %s", exc)
            finally:
                self._connected.clear()
                self._upstream = None
                self._fail_sent_on(channel)
            if not self._closing:
                await asyncio.sleep(backoff_s)

    def _fail_sent_on(self, channel: Channel) -> None:
        for mapping in list(self._pending.values()):
            if mapping.sent_on is channel:
                self._finish(
                    mapping.relay_id,
                    error=RelayTimeout("disconnected", {"relayId": mapping.relay_id}),
                )


__all__ = ["ConnectFactory", "EnrichHook", "Relay"]
