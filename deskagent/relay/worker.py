"""Worker host: executes commands arriving over relay channels."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..errors import AutomationError, MalformedCommand
from ..ws_helpers import _import_websockets
from .channel import Channel, ChannelClosed, WebSocketChannel

logger = logging.getLogger("deskagent.relay")

EmitEvent = Callable[[dict[str, Any]], None]
CommandHandler = Callable[[dict[str, Any], EmitEvent], Awaitable[Any]]


class WorkerHost:
    """Dispatch ``request`` messages by command ``type``.

    Requests on one channel run concurrently; each gets exactly one
    ``response``. Handler exceptions become structured error responses.
    """

    def __init__(self, handlers: dict[str, CommandHandler]) -> None:
        self.handlers = dict(handlers)
        self._tasks: set[asyncio.Task] = set()
        self._server: Any | None = None

    async def serve(self, channel: Channel) -> None:
        logger.info("worker channel connected: %s", channel.name)
        try:
            while True:
                msg = await channel.recv()
                if msg.get("type") != "request":
                    continue
                task = asyncio.create_task(self._dispatch(channel, msg))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except ChannelClosed:
            logger.info("worker channel closed: %s", channel.name)

    async def serve_websocket(self, host: str, port: int) -> Any:
        """Listen for relay connections; returns the ``websockets`` server."""
        websockets = _import_websockets()

        async def _handler(ws):  # type: ignore[no-untyped-def]
            await self.serve(WebSocketChannel(ws, name=f"worker-peer:{id(ws):x}"))

        self._server = await websockets.serve(_handler, host, int(port), max_size=None, ping_interval=None)
        logger.info("worker host listening on ws://%s:%s", host, port)
        return self._server

    async def close(self) -> None:
        server = self._server
        self._server = None
        if server is not None:
            server.close()
            with contextlib.suppress(Exception):
                await server.wait_closed()
        for task in list(self._tasks):
            task.cancel()

    async def _dispatch(self, channel: Channel, msg: dict[str, Any]) -> None:
        request_id = msg.get("requestId")
        command = msg.get("command")
        # Events for this request are flushed before its response.
        sent_events: list[asyncio.Future] = []

        def emit(event: dict[str, Any]) -> None:
            message = {"type": "event", "requestId": request_id, "event": event}
            task = asyncio.ensure_future(_send_quietly(channel, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            sent_events.append(task)

        try:
            if not isinstance(command, dict):
                raise MalformedCommand("Request has no command object")
            command_type = command.get("type")
            handler = self.handlers.get(str(command_type))
            if handler is None:
                raise MalformedCommand(f"Unknown command type: {command_type!r}", {"type": command_type})
            result = await handler(command, emit)
            reply: dict[str, Any] = {"type": "response", "requestId": request_id, "ok": True, "result": result}
        except AutomationError as exc:
            reply = {"type": "response", "requestId": request_id, "ok": False, "error": exc.to_dict()}
        except Exception as exc:  # noqa: BLE001
            logger.exception("command handler crashed")
            reply = {
                "type": "response",
                "requestId": request_id,
                "ok": False,
                "error": {"code": "Error", "message": f"{type(exc).__name__}: {exc}"},
            }
        if sent_events:
            await asyncio.gather(*sent_events, return_exceptions=True)
        await _send_quietly(channel, reply)


async def _send_quietly(channel: Channel, message: dict[str, Any]) -> None:
    try:
        await channel.send(message)
    except ChannelClosed:
        logger.debug("channel %s closed; dropping %s", channel.name, message.get("type"))


__all__ = ["CommandHandler", "EmitEvent", "WorkerHost"]
