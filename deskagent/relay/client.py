"""Request/response correlation over a single channel."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..errors import RelayDisconnected, RelayTimeout, error_from_dict
from .channel import Channel, ChannelClosed

logger = logging.getLogger("deskagent.relay")

EventCallback = Callable[[dict[str, Any]], Any]


@dataclass
class PendingRequest:
    request_id: int
    created_at: float
    timeout_at: float
    future: asyncio.Future
    on_event: EventCallback | None = None


class RelayClient:
    """Sends commands on a channel and resolves them by ``requestId``.

    Ids come from a per-client counter and are never reused, so a late
    response can only ever match the request that produced it.
    """

    def __init__(self, channel: Channel, *, timeout: float = 300.0) -> None:
        self.channel = channel
        self.timeout = float(timeout)
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingRequest] = {}
        self._reader: asyncio.Task | None = None

    def start(self) -> None:
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop(), name="deskagent-relay-client")

    async def close(self) -> None:
        await self.channel.close()
        reader = self._reader
        self._reader = None
        if reader is not None:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_all(RelayDisconnected("Relay client closed"))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def send(
        self,
        command: dict[str, Any],
        *,
        timeout: float | None = None,
        on_event: EventCallback | None = None,
    ) -> Any:
        """Send ``command`` and wait for its result.

        Raises:
            RelayTimeout: no response within ``timeout`` seconds.
            RelayDisconnected: the channel closed first.
            AutomationError: the remote side answered with an error.
        """
        self.start()
        wait_s = self.timeout if timeout is None else max(0.01, float(timeout))
        request_id = next(self._ids)
        now = time.monotonic()
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, now, now + wait_s, fut, on_event)
        try:
            try:
                await self.channel.send({"type": "request", "requestId": request_id, "command": command})
            except ChannelClosed as exc:
                raise RelayDisconnected(str(exc)) from exc
            try:
                response = await asyncio.wait_for(fut, timeout=wait_s)
            except asyncio.TimeoutError as exc:
                raise RelayTimeout(
                    f"No response within {wait_s:.1f}s", {"requestId": request_id, "command": command.get("type")}
                ) from exc
        finally:
            self._pending.pop(request_id, None)
        if response.get("ok") is True:
            return response.get("result")
        raise error_from_dict(response.get("error"))

    async def _read_loop(self) -> None:
        try:
            while True:
                msg = await self.channel.recv()
                self._on_message(msg)
        except ChannelClosed as exc:
            logger.info("relay client channel closed: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("relay client reader crashed")
        finally:
            self._fail_all(RelayDisconnected("Channel disconnected before the response arrived"))

    def _on_message(self, msg: dict[str, Any]) -> None:
        try:
            request_id = int(msg.get("requestId"))
        except (TypeError, ValueError):
            return
        pending = self._pending.get(request_id)
        if pending is None:
            logger.debug("dropping message for unknown request %s", request_id)
            return
        mtype = msg.get("type")
        if mtype == "response":
            if not pending.future.done():
                pending.future.set_result(msg)
        elif mtype == "event" and pending.on_event is not None:
            try:
                pending.on_event(msg.get("event") if isinstance(msg.get("event"), dict) else {})
            except Exception:  # noqa: BLE001
                logger.debug("event callback failed", exc_info=True)

    def _fail_all(self, exc: Exception) -> None:
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(exc)


__all__ = ["EventCallback", "PendingRequest", "RelayClient"]
