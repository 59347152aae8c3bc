"""Per-target page helpers on top of the protocol client."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any

from .errors import CdpError, SessionDetached


class PageSession:
    """Page operations for one attached target session."""

    def __init__(self, client: Any, session_id: str, target_id: str) -> None:
        self.client = client
        self.session_id = session_id
        self.target_id = target_id

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict:
        return await self.client.send(method, params, session_id=self.session_id, timeout=timeout)

    async def evaluate(self, expression: str, *, timeout: float | None = None) -> Any:
        """Evaluate JavaScript in the page and return the value (by value)."""
        res = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
            timeout=timeout,
        )
        details = res.get("exceptionDetails")
        if isinstance(details, dict):
            exc = details.get("exception") if isinstance(details.get("exception"), dict) else {}
            text = exc.get("description") or details.get("text") or "exception"
            raise CdpError(f"Evaluation failed: {text}")
        result = res.get("result")
        if not isinstance(result, dict):
            return None
        return result.get("value")

    async def navigate(self, url: str, *, timeout: float = 30.0) -> None:
        res = await self.send("Page.navigate", {"url": url})
        error_text = res.get("errorText")
        if isinstance(error_text, str) and error_text:
            raise CdpError(f"Navigation to {url} failed: {error_text}")
        if not await self.wait_ready(timeout=timeout):
            raise CdpError(f"Page did not finish loading within {timeout:.1f}s: {url}")

    async def wait_ready(self, *, timeout: float = 30.0, poll_interval: float = 0.1) -> bool:
        """Poll document.readyState until it is 'complete'."""
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            try:
                state = await self.evaluate("document.readyState", timeout=min(2.0, max(0.1, timeout)))
                if state == "complete":
                    return True
            except SessionDetached:
                raise
            except CdpError:
                # Execution context is replaced while a navigation commits.
                pass
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(poll_interval)

    async def click(self, x: float, y: float, *, button: str = "left", click_count: int = 1) -> None:
        await self.move_mouse(x, y)
        # A double click is two press/release pairs with rising clickCount.
        for count in range(1, max(1, int(click_count)) + 1):
            for event_type in ("mousePressed", "mouseReleased"):
                await self.send(
                    "Input.dispatchMouseEvent",
                    {"type": event_type, "x": x, "y": y, "button": button, "clickCount": count},
                )

    async def move_mouse(self, x: float, y: float) -> None:
        await self.send("Input.dispatchMouseEvent", {"type": "mouseMoved", "x": x, "y": y, "button": "none"})

    async def key_event(self, params: dict[str, Any]) -> None:
        await self.send("Input.dispatchKeyEvent", params)

    async def set_viewport(self, width: int, height: int, *, scale: float = 1.0, mobile: bool = False) -> None:
        await self.send(
            "Emulation.setDeviceMetricsOverride",
            {"width": int(width), "height": int(height), "deviceScaleFactor": float(scale), "mobile": bool(mobile)},
        )

    async def scroll_to(self, x: float, y: float) -> None:
        await self.evaluate(f"window.scrollTo({json.dumps(x)}, {json.dumps(y)})")


__all__ = ["PageSession"]
