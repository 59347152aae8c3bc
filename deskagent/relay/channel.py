"""Message channels between execution contexts.

A channel carries JSON objects. Two implementations share one surface:
``WebSocketChannel`` (a ``websockets`` connection, JSON text frames) and the
in-process ``MemoryChannel`` pair. Messages crossing a memory channel are
copied through JSON so the two ends never share mutable state.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

from ..ws_helpers import _import_websockets


class ChannelClosed(Exception):
    """The peer went away; no further messages will be delivered."""


class Channel:
    name: str = "channel"

    async def send(self, message: dict[str, Any]) -> None:
        raise NotImplementedError

    async def recv(self) -> dict[str, Any]:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class WebSocketChannel(Channel):
    def __init__(self, ws: Any, name: str = "ws") -> None:
        self._ws = ws
        self.name = name
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ChannelClosed(f"{self.name} is closed")
        try:
            await self._ws.send(json.dumps(message, ensure_ascii=False))
        except Exception as exc:  # noqa: BLE001
            self._closed = True
            raise ChannelClosed(f"{self.name} send failed: {exc}") from exc

    async def recv(self) -> dict[str, Any]:
        while True:
            if self._closed:
                raise ChannelClosed(f"{self.name} is closed")
            try:
                raw = await self._ws.recv()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._closed = True
                raise ChannelClosed(f"{self.name} closed: {exc}") from exc
            try:
                msg = json.loads(raw)
            except (TypeError, ValueError):
                continue
            if isinstance(msg, dict):
                return msg

    async def close(self) -> None:
        self._closed = True
        with contextlib.suppress(Exception):
            await self._ws.close()


_CLOSE = object()


class MemoryChannel(Channel):
    def __init__(self, inbox: asyncio.Queue, outbox: asyncio.Queue, name: str = "memory") -> None:
        self._inbox = inbox
        self._outbox = outbox
        self.name = name
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ChannelClosed(f"{self.name} is closed")
        self._outbox.put_nowait(json.loads(json.dumps(message)))

    async def recv(self) -> dict[str, Any]:
        if self._closed:
            raise ChannelClosed(f"{self.name} is closed")
        item = await self._inbox.get()
        if item is _CLOSE:
            self._closed = True
            raise ChannelClosed(f"{self.name} closed by peer")
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake the peer's reader and our own.
        self._outbox.put_nowait(_CLOSE)
        self._inbox.put_nowait(_CLOSE)


def memory_channel_pair(name: str = "memory") -> tuple[MemoryChannel, MemoryChannel]:
    a_to_b: asyncio.Queue = asyncio.Queue()
    b_to_a: asyncio.Queue = asyncio.Queue()
    return (
        MemoryChannel(b_to_a, a_to_b, name=f"{name}:a"),
        MemoryChannel(a_to_b, b_to_a, name=f"{name}:b"),
    )


async def connect_websocket(url: str, *, open_timeout: float = 5.0) -> WebSocketChannel:
    websockets = _import_websockets()
    ws = await websockets.connect(url, open_timeout=open_timeout, max_size=None, ping_interval=None)
    return WebSocketChannel(ws, name=url)


__all__ = [
    "Channel",
    "ChannelClosed",
    "MemoryChannel",
    "WebSocketChannel",
    "connect_websocket",
    "memory_channel_pair",
]
