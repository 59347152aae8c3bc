"""DeskAgent execution core.

Interprets declarative step scripts against a live page over the Chrome
DevTools Protocol and relays commands between independently-lifecycled
contexts (orchestrator, ephemeral clients, worker host).
"""

from __future__ import annotations

__version__ = "0.3.0"
