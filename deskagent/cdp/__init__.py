"""Chrome DevTools Protocol client layer.

- errors.py: transport errors
- targets.py: HTTP discovery of the browser endpoint
- client.py: browser-level websocket connection with flattened target sessions
- page.py: per-target helpers (evaluate, input, navigation)
"""

from __future__ import annotations

from .client import CdpProtocolClient, ProtocolEvent
from .errors import CdpError, SessionDetached
from .page import PageSession

__all__ = ["CdpError", "CdpProtocolClient", "PageSession", "ProtocolEvent", "SessionDetached"]
