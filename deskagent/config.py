from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

DEFAULT_CLICKABLE_TAGS: list[str] = ["a", "button"]
DEFAULT_CLICKABLE_ROLES: list[str] = ["button", "link", "row", "gridcell", "listitem", "option", "menuitem"]
DEFAULT_CLICKABLE_CLASSES: list[str] = ["click", "link", "button", "action"]
DEFAULT_CLICKABLE_DATA: list[str] = ["click", "action", "cell", "row", "item", "chat"]


def _split_list(raw: str | None, fallback: list[str]) -> list[str]:
    if raw is None:
        return list(fallback)
    items = [item.strip().lower() for item in raw.split(",") if item.strip()]
    return items or list(fallback)


def _env_float(env: Mapping[str, str], key: str, fallback: float) -> float:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return fallback
    try:
        return float(raw)
    except ValueError:
        return fallback


def _env_int(env: Mapping[str, str], key: str, fallback: int) -> int:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return fallback
    try:
        return int(raw)
    except ValueError:
        return fallback


@dataclass
class ClickableConfig:
    """Rules for the clickable-ancestor walk."""

    tags: list[str] = field(default_factory=lambda: list(DEFAULT_CLICKABLE_TAGS))
    roles: list[str] = field(default_factory=lambda: list(DEFAULT_CLICKABLE_ROLES))
    class_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_CLICKABLE_CLASSES))
    data_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_CLICKABLE_DATA))
    max_depth: int = 10

    def to_dict(self) -> dict[str, object]:
        return {
            "tags": list(self.tags),
            "roles": list(self.roles),
            "classKeywords": list(self.class_keywords),
            "dataKeywords": list(self.data_keywords),
            "maxDepth": int(self.max_depth),
        }


@dataclass
class AgentConfig:
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    cdp_timeout: float = 10.0
    # wait-for-* steps and navigation load waits
    step_timeout: float = 30.0
    # element resolution for click/type/hover
    action_timeout: float = 5.0
    debug_delay_ms: int = 0
    reattach_backoff_s: float = 0.1
    max_reattach_per_run: int = 1
    relay_timeout: float = 300.0
    relay_host: str = "127.0.0.1"
    relay_port: int = 8765
    worker_host: str = "127.0.0.1"
    worker_port: int = 8766
    scripts_file: str | None = None
    session_queue: str = "queue"
    clickable: ClickableConfig = field(default_factory=ClickableConfig)

    @staticmethod
    def normalize_queue_policy(raw: str | None) -> str:
        policy = (raw or "").strip().lower()
        if policy in {"reject", "fail", "busy"}:
            return "reject"
        return "queue"

    @property
    def cdp_http_url(self) -> str:
        return f"http://{self.cdp_host}:{self.cdp_port}"

    @property
    def worker_url(self) -> str:
        return f"ws://{self.worker_host}:{self.worker_port}"

    @property
    def relay_url(self) -> str:
        return f"ws://{self.relay_host}:{self.relay_port}"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> AgentConfig:
        env = os.environ if env is None else env
        clickable = ClickableConfig(
            tags=_split_list(env.get("DESKAGENT_CLICKABLE_TAGS"), DEFAULT_CLICKABLE_TAGS),
            roles=_split_list(env.get("DESKAGENT_CLICKABLE_ROLES"), DEFAULT_CLICKABLE_ROLES),
            class_keywords=_split_list(env.get("DESKAGENT_CLICKABLE_CLASSES"), DEFAULT_CLICKABLE_CLASSES),
            data_keywords=_split_list(env.get("DESKAGENT_CLICKABLE_DATA"), DEFAULT_CLICKABLE_DATA),
            max_depth=max(1, _env_int(env, "DESKAGENT_ANCESTOR_DEPTH", 10)),
        )
        scripts_file = (env.get("DESKAGENT_SCRIPTS_FILE") or "").strip() or None
        return cls(
            cdp_host=(env.get("DESKAGENT_CDP_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            cdp_port=_env_int(env, "DESKAGENT_CDP_PORT", 9222),
            cdp_timeout=max(0.5, _env_float(env, "DESKAGENT_CDP_TIMEOUT", 10.0)),
            step_timeout=max(0.1, _env_float(env, "DESKAGENT_STEP_TIMEOUT", 30.0)),
            action_timeout=max(0.1, _env_float(env, "DESKAGENT_ACTION_TIMEOUT", 5.0)),
            debug_delay_ms=max(0, _env_int(env, "DESKAGENT_DEBUG_DELAY_MS", 0)),
            reattach_backoff_s=max(0.0, _env_int(env, "DESKAGENT_REATTACH_BACKOFF_MS", 100) / 1000.0),
            max_reattach_per_run=max(0, _env_int(env, "DESKAGENT_MAX_REATTACH", 1)),
            relay_timeout=max(0.1, _env_float(env, "DESKAGENT_RELAY_TIMEOUT", 300.0)),
            relay_host=(env.get("DESKAGENT_RELAY_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            relay_port=_env_int(env, "DESKAGENT_RELAY_PORT", 8765),
            worker_host=(env.get("DESKAGENT_WORKER_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            worker_port=_env_int(env, "DESKAGENT_WORKER_PORT", 8766),
            scripts_file=os.path.expanduser(scripts_file) if scripts_file else None,
            session_queue=cls.normalize_queue_policy(env.get("DESKAGENT_SESSION_QUEUE")),
            clickable=clickable,
        )
