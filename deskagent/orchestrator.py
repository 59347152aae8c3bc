"""Orchestrator context: validates commands and relays them to the worker host."""

from __future__ import annotations

import contextlib
import logging
from typing import Any

from .commands import RunScript, parse_command
from .config import AgentConfig
from .relay.channel import Channel, WebSocketChannel, connect_websocket
from .relay.client import EventCallback, RelayClient
from .relay.relay import Relay
from .storage import ScriptStore
from .ws_helpers import _import_websockets

logger = logging.getLogger("deskagent.relay")


class Orchestrator:
    """Accepts ephemeral caller channels and forwards their commands upstream.

    Malformed commands are answered locally. ``runScript`` commands that name
    a stored script get the document inlined, so the worker does not need
    access to the same store.
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        *,
        store: ScriptStore | None = None,
        relay: Relay | None = None,
    ) -> None:
        self.config = config or AgentConfig()
        self.store = store
        self.relay = relay or Relay(self._connect_worker, timeout=self.config.relay_timeout, enrich=self.enrich)
        self._server: Any | None = None

    async def _connect_worker(self) -> Channel:
        return await connect_websocket(self.config.worker_url, open_timeout=self.config.cdp_timeout)

    def enrich(self, command: dict[str, Any]) -> dict[str, Any]:
        parsed = parse_command(command)
        if isinstance(parsed, RunScript) and parsed.script is None and self.store is not None:
            doc = self.store.get(parsed.script_id)
            if doc is not None:
                parsed.script = doc
        return parsed.to_dict()

    async def serve_websocket(self, host: str | None = None, port: int | None = None) -> Any:
        websockets = _import_websockets()
        bind_host = host or self.config.relay_host
        bind_port = int(port if port is not None else self.config.relay_port)

        async def _handler(ws):  # type: ignore[no-untyped-def]
            await self.relay.serve_ephemeral(WebSocketChannel(ws, name=f"caller:{id(ws):x}"))

        self.relay.start()
        self._server = await websockets.serve(_handler, bind_host, bind_port, max_size=None, ping_interval=None)
        logger.info("orchestrator listening on ws://%s:%s (worker %s)", bind_host, bind_port, self.config.worker_url)
        return self._server

    async def close(self) -> None:
        server = self._server
        self._server = None
        if server is not None:
            server.close()
            with contextlib.suppress(Exception):
                await server.wait_closed()
        await self.relay.close()


async def send_command(
    config: AgentConfig,
    command: dict[str, Any],
    *,
    on_event: EventCallback | None = None,
    timeout: float | None = None,
) -> Any:
    """Open an ephemeral channel to the orchestrator, send one command, close."""
    channel = await connect_websocket(config.relay_url, open_timeout=config.cdp_timeout)
    client = RelayClient(channel, timeout=config.relay_timeout)
    try:
        return await client.send(command, timeout=timeout, on_event=on_event)
    finally:
        await client.close()


__all__ = ["Orchestrator", "send_command"]
