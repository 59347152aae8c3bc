"""Key descriptors and ``Input.dispatchKeyEvent`` payloads."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

MODIFIER_BITS: dict[str, int] = {
    "alt": 1,
    "altkey": 1,
    "control": 2,
    "ctrl": 2,
    "ctrlkey": 2,
    "meta": 4,
    "metakey": 4,
    "command": 4,
    "cmd": 4,
    "shift": 8,
    "shiftkey": 8,
}

KEY_UP_DELAY_MS = 30


@dataclass(frozen=True)
class KeyDescriptor:
    key: str
    code: str
    key_code: int
    text: str = ""
    unmodified_text: str = ""
    produces_text: bool = False


_SPECIAL_KEYS: dict[str, KeyDescriptor] = {
    "Enter": KeyDescriptor("Enter", "Enter", 13),
    "Tab": KeyDescriptor("Tab", "Tab", 9),
    "Backspace": KeyDescriptor("Backspace", "Backspace", 8),
    "Delete": KeyDescriptor("Delete", "Delete", 46),
    "Escape": KeyDescriptor("Escape", "Escape", 27),
    "ArrowUp": KeyDescriptor("ArrowUp", "ArrowUp", 38),
    "ArrowDown": KeyDescriptor("ArrowDown", "ArrowDown", 40),
    "ArrowLeft": KeyDescriptor("ArrowLeft", "ArrowLeft", 37),
    "ArrowRight": KeyDescriptor("ArrowRight", "ArrowRight", 39),
    "Home": KeyDescriptor("Home", "Home", 36),
    "End": KeyDescriptor("End", "End", 35),
    "PageUp": KeyDescriptor("PageUp", "PageUp", 33),
    "PageDown": KeyDescriptor("PageDown", "PageDown", 34),
    "Space": KeyDescriptor(" ", "Space", 32, " ", " ", True),
}


def _character(key: str) -> KeyDescriptor:
    if len(key) == 1:
        code = f"Digit{key}" if key.isdigit() else f"Key{key.upper()}" if key.isalpha() else key
        return KeyDescriptor(key, code, ord(key.upper()), key, key, True)
    return KeyDescriptor(key or "Unidentified", key or "Unidentified", 0)


def describe_key(step: dict[str, Any]) -> KeyDescriptor:
    """Build the descriptor for ``step['key']``; explicit step fields win over the table."""
    key = str(step.get("key") or "")
    base = _SPECIAL_KEYS.get(key) or _character(key)
    overrides = step.get("keyDescriptor") if isinstance(step.get("keyDescriptor"), dict) else {}

    def pick(name: str, fallback: Any) -> Any:
        if name in overrides:
            return overrides[name]
        if name in step and name != "key":
            return step[name]
        return fallback

    text = pick("text", base.text)
    produces = pick("textProducesCharacter", None)
    if produces is None:
        produces = bool(text) and len(str(text)) == 1 and str(text) not in {"\r", "\n"}
    return KeyDescriptor(
        key=str(overrides.get("key") or base.key),
        code=str(pick("code", base.code)),
        key_code=int(pick("keyCode", base.key_code) or 0),
        text=str(text or ""),
        unmodified_text=str(pick("unmodifiedText", base.unmodified_text or text) or ""),
        produces_text=bool(produces),
    )


def modifier_mask(step: dict[str, Any]) -> int:
    """CDP modifier bitmask from ``modifiers: [...]`` or ``altKey``-style booleans."""
    names = step.get("modifiers")
    if isinstance(names, str):
        names = [names]
    if not isinstance(names, list):
        names = []
        if step.get("altKey"):
            names.append("alt")
        if step.get("ctrlKey") or step.get("controlKey"):
            names.append("ctrl")
        if step.get("metaKey") or step.get("commandKey"):
            names.append("meta")
        if step.get("shiftKey"):
            names.append("shift")
    mask = 0
    for name in names:
        if isinstance(name, str):
            mask |= MODIFIER_BITS.get(name.strip().lower(), 0)
    return mask


def key_event_payloads(step: dict[str, Any]) -> tuple[list[dict[str, Any]], dict[str, Any] | None]:
    """Return ``(events, key_up)`` for a key step.

    ``events`` are dispatched immediately (keyDown plus an optional char event,
    or a lone keyUp). ``key_up`` is the automatic release, sent after
    ``keyUpDelay`` ms, or None when not wanted.
    """
    descriptor = describe_key(step)
    base: dict[str, Any] = {
        "key": descriptor.key,
        "code": descriptor.code,
        "keyCode": descriptor.key_code,
        "windowsVirtualKeyCode": descriptor.key_code,
        "nativeVirtualKeyCode": descriptor.key_code,
        "text": "",
        "unmodifiedText": "",
        "autoRepeat": bool(step.get("autoRepeat", False)),
        "isKeypad": bool(step.get("isKeypad", False)),
        "location": int(step.get("location") or 0),
        "modifiers": modifier_mask(step),
    }
    if str(step.get("direction") or "down").lower() == "up":
        return [{**base, "type": "keyUp"}], None

    down = {**base, "type": "keyDown"}
    if descriptor.produces_text:
        down["text"] = descriptor.text
        down["unmodifiedText"] = descriptor.unmodified_text
    events = [down]
    if descriptor.produces_text and step.get("sendCharEvent", True) is not False:
        events.append(
            {
                **base,
                "type": "char",
                "text": descriptor.text,
                "unmodifiedText": descriptor.unmodified_text or descriptor.text,
            }
        )
    key_up = {**base, "type": "keyUp"} if step.get("autoKeyUp", True) is not False else None
    return events, key_up


__all__ = ["KEY_UP_DELAY_MS", "KeyDescriptor", "describe_key", "key_event_payloads", "modifier_mask"]
