from __future__ import annotations


class CdpError(Exception):
    pass


class SessionDetached(CdpError):
    """The target session went away while a command was in flight."""

    def __init__(self, target_id: str, reason: str = "") -> None:
        super().__init__(f"session for target {target_id} detached: {reason or 'unknown'}")
        self.target_id = str(target_id or "")
        self.reason = str(reason or "")
