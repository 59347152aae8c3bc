"""Read-only script storage."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from .errors import MalformedScript

logger = logging.getLogger("deskagent.storage")


class ScriptStore(Protocol):
    def get(self, script_id: str) -> dict[str, Any] | None: ...

    def list(self) -> list[dict[str, Any]]: ...


def _find_script(scripts: list[dict[str, Any]], script_id: str) -> dict[str, Any] | None:
    wanted = str(script_id)
    for doc in scripts:
        if str(doc.get("id", "")) == wanted:
            return dict(doc)
    # Fallback: title match, case-insensitive.
    lowered = wanted.strip().lower()
    for doc in scripts:
        if str(doc.get("title", "")).strip().lower() == lowered:
            return dict(doc)
    return None


class JsonScriptStore:
    """Scripts from a JSON file: a list of documents or ``{"jsonScripts": [...]}``.

    The file is re-read when its mtime changes, so edits made by other tools
    show up without a restart. Documents without an ``id`` are indexed by
    title.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._mtime: float | None = None
        self._scripts: list[dict[str, Any]] = []

    def _load(self) -> list[dict[str, Any]]:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            if self._mtime is not None:
                logger.warning("script file %s disappeared", self.path)
            self._mtime = None
            self._scripts = []
            return self._scripts
        if mtime == self._mtime:
            return self._scripts
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise MalformedScript(f"Cannot read scripts from {self.path}: {exc}") from exc
        if isinstance(doc, dict):
            doc = doc.get("jsonScripts", doc.get("scripts"))
        if not isinstance(doc, list):
            raise MalformedScript(f"{self.path} must hold a list of scripts or an object with 'jsonScripts'")
        self._scripts = [s for s in doc if isinstance(s, dict)]
        self._mtime = mtime
        logger.info("loaded %d scripts from %s", len(self._scripts), self.path)
        return self._scripts

    def list(self) -> list[dict[str, Any]]:
        return [dict(s) for s in self._load()]

    def get(self, script_id: str) -> dict[str, Any] | None:
        return _find_script(self._load(), script_id)


class MemoryScriptStore:
    def __init__(self, scripts: list[dict[str, Any]] | None = None) -> None:
        self._scripts = [dict(s) for s in (scripts or [])]

    def add(self, doc: dict[str, Any]) -> None:
        self._scripts.append(dict(doc))

    def list(self) -> list[dict[str, Any]]:
        return [dict(s) for s in self._scripts]

    def get(self, script_id: str) -> dict[str, Any] | None:
        return _find_script(self._scripts, script_id)


__all__ = ["JsonScriptStore", "MemoryScriptStore", "ScriptStore"]
