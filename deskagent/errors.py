"""Structured errors surfaced by the execution core.

Every error carries a stable result ``code`` (the exit/result codes callers
switch on) and renders to a JSON-able dict so it can cross a relay hop.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

SUCCESS = "success"


@dataclass(eq=False)
class AutomationError(Exception):
    """Base error with a result code and context for the caller."""

    reason: str
    details: dict[str, Any] = field(default_factory=dict)

    code: ClassVar[str] = "Error"

    def __post_init__(self) -> None:
        super().__init__(self.reason)

    def __str__(self) -> str:
        return f"{self.code}: {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.reason}
        if self.details:
            out["details"] = dict(self.details)
        return out


class ElementNotFound(AutomationError):
    code = "NotFound"


class SessionLost(AutomationError):
    code = "SessionLost"


class SessionBusy(AutomationError):
    code = "SessionBusy"


class Cancelled(AutomationError):
    code = "Cancelled"


class MalformedScript(AutomationError):
    code = "MalformedScript"


class MalformedCommand(AutomationError):
    code = "MalformedCommand"


class WaitTimeout(AutomationError):
    code = "Timeout"


class RelayTimeout(AutomationError):
    code = "RelayTimeout"


class RelayDisconnected(RelayTimeout):
    """The channel carrying a request went away before the response arrived.

    Reported with the ``RelayTimeout`` code: the caller only needs to know the
    request will never be answered.
    """


@dataclass(eq=False)
class StepFailed(AutomationError):
    step_index: int | None = None
    kind: str | None = None
    path: tuple[int, ...] = ()
    cause: str = "Error"

    code: ClassVar[str] = "StepFailed"

    def __str__(self) -> str:
        return f"StepFailed at step {self.step_index} ({self.kind}): {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out.update(
            {
                "stepIndex": self.step_index,
                "kind": self.kind,
                "path": list(self.path),
                "cause": self.cause,
            }
        )
        return out


def error_from_dict(payload: Any) -> AutomationError:
    """Rebuild an error received over a relay hop (best-effort)."""
    if not isinstance(payload, dict):
        return AutomationError(str(payload or "unknown error"))
    code = str(payload.get("code") or "Error")
    message = str(payload.get("message") or code)
    details = payload.get("details") if isinstance(payload.get("details"), dict) else {}
    if code == StepFailed.code:
        raw_path = payload.get("path")
        return StepFailed(
            message,
            details,
            step_index=payload.get("stepIndex") if isinstance(payload.get("stepIndex"), int) else None,
            kind=payload.get("kind") if isinstance(payload.get("kind"), str) else None,
            path=tuple(int(p) for p in raw_path) if isinstance(raw_path, list) else (),
            cause=str(payload.get("cause") or "Error"),
        )
    for cls in (
        ElementNotFound,
        SessionLost,
        SessionBusy,
        Cancelled,
        MalformedScript,
        MalformedCommand,
        WaitTimeout,
        RelayTimeout,
    ):
        if cls.code == code:
            return cls(message, details)
    return AutomationError(message, details)


__all__ = [
    "SUCCESS",
    "AutomationError",
    "Cancelled",
    "ElementNotFound",
    "MalformedCommand",
    "MalformedScript",
    "RelayDisconnected",
    "RelayTimeout",
    "SessionBusy",
    "SessionLost",
    "StepFailed",
    "WaitTimeout",
    "error_from_dict",
]
