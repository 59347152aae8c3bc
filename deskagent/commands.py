"""Commands accepted by the worker host and the result they produce."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .errors import SUCCESS, AutomationError, MalformedCommand

RUN_SCRIPT = "runScript"
PROCESS_INTENT = "processIntent"
ATTACH = "attach"
DETACH = "detach"
STATUS = "status"


@dataclass
class RunScript:
    script_id: str
    parameters: dict[str, Any] = field(default_factory=dict)
    # Inline document, used instead of a store lookup when present.
    script: dict[str, Any] | None = None
    target: str | None = None

    type = RUN_SCRIPT

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "scriptId": self.script_id, "parameters": dict(self.parameters)}
        if self.script is not None:
            out["script"] = self.script
        if self.target is not None:
            out["target"] = self.target
        return out


@dataclass
class ProcessIntent:
    text: str

    type = PROCESS_INTENT

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass
class Attach:
    target: str

    type = ATTACH

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "target": self.target}


@dataclass
class Detach:
    target: str

    type = DETACH

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "target": self.target}


@dataclass
class Status:
    type = STATUS

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


Command = RunScript | ProcessIntent | Attach | Detach | Status


def _require_str(payload: dict[str, Any], key: str, command_type: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MalformedCommand(f"{command_type} requires a non-empty '{key}'", {"type": command_type})
    return value.strip()


def parse_command(payload: Any) -> Command:
    """Build a typed command from its wire form.

    Raises:
        MalformedCommand: unknown ``type`` or missing required fields.
    """
    if not isinstance(payload, dict):
        raise MalformedCommand("Command must be an object")
    command_type = payload.get("type")
    if command_type == RUN_SCRIPT:
        params = payload.get("parameters")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise MalformedCommand("runScript parameters must be an object", {"type": command_type})
        script = payload.get("script")
        if script is not None and not isinstance(script, dict):
            raise MalformedCommand("runScript script must be an object", {"type": command_type})
        script_id = payload.get("scriptId")
        if script is None:
            script_id = _require_str(payload, "scriptId", RUN_SCRIPT)
        target = payload.get("target")
        return RunScript(
            script_id=str(script_id or script.get("id") or "inline"),
            parameters=dict(params),
            script=script,
            target=target if isinstance(target, str) and target.strip() else None,
        )
    if command_type == PROCESS_INTENT:
        return ProcessIntent(text=_require_str(payload, "text", PROCESS_INTENT))
    if command_type == ATTACH:
        return Attach(target=_require_str(payload, "target", ATTACH))
    if command_type == DETACH:
        return Detach(target=_require_str(payload, "target", DETACH))
    if command_type == STATUS:
        return Status()
    raise MalformedCommand(f"Unknown command type: {command_type!r}", {"type": command_type})


@dataclass
class ExecutionResult:
    success: bool
    script_id: str | None = None
    tab_id: str | None = None
    error: dict[str, Any] | None = None
    steps_completed: int = 0

    @property
    def code(self) -> str:
        if self.success:
            return SUCCESS
        return str((self.error or {}).get("code") or "Error")

    @classmethod
    def ok(cls, *, script_id: str | None, tab_id: str | None, steps_completed: int) -> ExecutionResult:
        return cls(True, script_id=script_id, tab_id=tab_id, steps_completed=steps_completed)

    @classmethod
    def failed(
        cls,
        exc: AutomationError,
        *,
        script_id: str | None = None,
        tab_id: str | None = None,
        steps_completed: int = 0,
    ) -> ExecutionResult:
        return cls(False, script_id=script_id, tab_id=tab_id, error=exc.to_dict(), steps_completed=steps_completed)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success, "code": self.code, "stepsCompleted": self.steps_completed}
        if self.script_id is not None:
            out["scriptId"] = self.script_id
        if self.tab_id is not None:
            out["tabId"] = self.tab_id
        if self.error is not None:
            out["error"] = dict(self.error)
        return out

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionResult:
        error = payload.get("error")
        return cls(
            success=payload.get("success") is True,
            script_id=payload.get("scriptId"),
            tab_id=payload.get("tabId"),
            error=dict(error) if isinstance(error, dict) else None,
            steps_completed=int(payload.get("stepsCompleted") or 0),
        )


__all__ = [
    "ATTACH",
    "DETACH",
    "PROCESS_INTENT",
    "RUN_SCRIPT",
    "STATUS",
    "Attach",
    "Command",
    "Detach",
    "ExecutionResult",
    "ProcessIntent",
    "RunScript",
    "Status",
    "parse_command",
]
