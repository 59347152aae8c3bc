"""HTTP discovery of the browser's remote-debugging endpoint."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

from ..config import AgentConfig
from .errors import CdpError


def _http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from URL."""
    req = Request(url, headers={"User-Agent": "deskagent/1.0"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (TimeoutError, URLError, json.JSONDecodeError) as exc:
        raise CdpError(f"GET {url} failed: {exc}") from exc


async def browser_ws_url(config: AgentConfig) -> str:
    """Resolve the browser-level websocket URL from /json/version."""
    data = await asyncio.to_thread(_http_get_json, f"{config.cdp_http_url}/json/version", config.cdp_timeout)
    ws_url = data.get("webSocketDebuggerUrl") if isinstance(data, dict) else None
    if not isinstance(ws_url, str) or not ws_url:
        raise CdpError(f"No browser websocket endpoint at {config.cdp_http_url} (is remote debugging enabled?)")
    return ws_url


__all__ = ["browser_ws_url"]
