from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import pytest
from cdp_fakes import FakeCdpClient

from deskagent.config import AgentConfig

SEARCH = {
    "id": "search",
    "title": "Search the site",
    "description": "Type a query into the search box and submit",
    "parameters": {"q": "hello"},
    "targetUrl": "https://example.test/",
    "steps": [
        {"type": "navigate", "url": "https://example.test/search"},
        {"type": "type", "selectors": "#q", "value": "{{q}}"},
        {"type": "click", "selectors": "#go"},
    ],
}
LOGOUT = {"id": "logout", "title": "Log out", "description": "Sign out of the account", "steps": []}


def _agent(scripts: list[dict[str, Any]] | None = None):  # noqa: ANN202
    from deskagent.agent import AutomationAgent
    from deskagent.session_manager import SessionManager
    from deskagent.storage import MemoryScriptStore

    client = FakeCdpClient()
    page = client.add_page("T1", "https://example.test/")
    page.add("#q", tag="input")
    page.add("#go")
    config = AgentConfig(reattach_backoff_s=0.0, cdp_timeout=1.0, action_timeout=0.2)

    async def _factory() -> SessionManager:
        return SessionManager(client, config, settle_delay=0.0)

    agent = AutomationAgent(config, store=MemoryScriptStore(scripts or [SEARCH, LOGOUT]), session_factory=_factory)
    return client, page, agent


def test_run_script_end_to_end_through_relay_and_worker() -> None:
    from deskagent.relay.channel import memory_channel_pair
    from deskagent.relay.relay import Relay
    from deskagent.relay.worker import WorkerHost

    async def _run() -> None:
        _client, page, agent = _agent()
        host = WorkerHost(agent.handlers())
        tasks: list[asyncio.Task] = []

        async def _connect():  # noqa: ANN202
            relay_end, worker_end = memory_channel_pair("upstream")
            tasks.append(asyncio.create_task(host.serve(worker_end)))
            return relay_end

        relay = Relay(_connect)
        events: list[dict[str, Any]] = []
        try:
            result = await relay.send(
                {"type": "runScript", "scriptId": "search", "parameters": {"q": "from-caller"}},
                on_event=events.append,
            )
        finally:
            await relay.close()
            await host.close()
            await agent.close()
            for task in tasks:
                task.cancel()

        assert result["success"] is True
        assert result["code"] == "success"
        assert result["stepsCompleted"] == 3
        assert result["tabId"] == "T1"
        assert [(e["type"], e["stepIndex"], e["kind"]) for e in events] == [
            ("progress", 0, "navigate"),
            ("progress", 1, "type"),
            ("progress", 2, "click"),
        ]
        assert page.typed == [("#q", "from-caller")]

    asyncio.run(_run())


def test_unknown_script_and_malformed_script_are_structured_results() -> None:
    from deskagent.commands import RunScript

    async def _run() -> None:
        _client, _page, agent = _agent()
        try:
            missing = await agent.run_script(RunScript(script_id="nope"))
            broken = await agent.run_script(
                RunScript(script_id="inline", script={"steps": [{"type": "fly"}], "targetUrl": "T1"})
            )
        finally:
            await agent.close()
        assert missing.code == "NotFound"
        assert broken.code == "MalformedScript"

    asyncio.run(_run())


def test_process_intent_runs_the_matching_script() -> None:
    async def _run() -> None:
        _client, page, agent = _agent()
        emitted: list[dict[str, Any]] = []
        try:
            out = await agent.handle_process_intent(
                {"type": "processIntent", "text": "search the site for 'kittens'"}, emitted.append
            )
            none = await agent.handle_process_intent(
                {"type": "processIntent", "text": "order pizza now"}, emitted.append
            )
        finally:
            await agent.close()
        assert out["intent"]["category"] == "script"
        assert out["intent"]["scriptReference"] == "search"
        assert out["intent"]["parameters"] == {"q": "kittens"}
        assert out["result"]["success"] is True
        assert page.typed == [("#q", "kittens")]
        assert len(emitted) == 3
        assert none["intent"]["category"] == "unknown"
        assert none["result"] is None

    asyncio.run(_run())


def test_attach_detach_and_status_commands() -> None:
    async def _run() -> None:
        client, _page, agent = _agent()
        noop = lambda _ev: None  # noqa: E731
        try:
            attached = await agent.handle_attach({"type": "attach", "target": "https://example.test/"}, noop)
            status = await agent.handle_status({"type": "status"}, noop)
            detached = await agent.handle_detach({"type": "detach", "target": "T1"}, noop)
        finally:
            await agent.close()
        assert attached["tabId"] == "T1"
        assert attached["session"]["generation"] == 1
        assert status["sessions"]["T1"]["state"] == "attached"
        assert status["browserConnected"] is True
        assert detached == {"detached": True, "tabId": "T1"}
        assert client.attach_calls == ["T1"]

    asyncio.run(_run())


def test_keyword_classifier_threshold() -> None:
    from deskagent.intent import KeywordIntentClassifier, extract_parameters
    from deskagent.storage import MemoryScriptStore

    classifier = KeywordIntentClassifier(MemoryScriptStore([SEARCH, LOGOUT]))
    assert classifier.classify("log out").script_reference == "logout"
    assert classifier.classify("").category == "unknown"
    assert classifier.classify("completely unrelated words here").category == "unknown"
    assert extract_parameters("look up cats named Tom", {"name": ""}) == {"name": "Tom"}
    assert extract_parameters("just do it", {"q": ""}) == {}
    assert extract_parameters('find "a b"', None) == {}


def test_json_script_store_formats_and_reload(tmp_path: Path) -> None:
    from deskagent.storage import JsonScriptStore

    path = tmp_path / "scripts.json"
    path.write_text(json.dumps({"jsonScripts": [SEARCH, {"title": "Untitled helper", "steps": []}, "junk"]}))
    store = JsonScriptStore(path)
    assert store.get("search")["title"] == "Search the site"
    assert store.get("untitled HELPER")["steps"] == []
    assert store.get("missing") is None
    assert len(store.list()) == 2

    path.write_text(json.dumps([LOGOUT]))
    os.utime(path, (1, 1))
    assert store.get("logout") is not None
    assert store.get("search") is None


def test_json_script_store_rejects_bad_files(tmp_path: Path) -> None:
    from deskagent.errors import MalformedScript
    from deskagent.storage import JsonScriptStore

    path = tmp_path / "scripts.json"
    path.write_text("{not json")
    with pytest.raises(MalformedScript):
        JsonScriptStore(path).list()
    assert JsonScriptStore(tmp_path / "absent.json").list() == []


def test_orchestrator_enrich_inlines_stored_scripts() -> None:
    from deskagent.errors import MalformedCommand
    from deskagent.orchestrator import Orchestrator
    from deskagent.storage import MemoryScriptStore

    async def _run() -> None:
        orchestrator = Orchestrator(AgentConfig(), store=MemoryScriptStore([SEARCH]))
        enriched = orchestrator.enrich({"type": "runScript", "scriptId": "search", "parameters": {"q": "x"}})
        assert enriched["script"]["id"] == "search"
        assert enriched["parameters"] == {"q": "x"}
        passthrough = orchestrator.enrich({"type": "runScript", "scriptId": "elsewhere"})
        assert "script" not in passthrough
        with pytest.raises(MalformedCommand):
            orchestrator.enrich({"type": "reboot"})
        await orchestrator.close()

    asyncio.run(_run())


def test_detach_accepts_the_url_used_to_attach() -> None:
    from deskagent.session_manager import SessionState

    async def _run() -> None:
        client, _page, agent = _agent()
        noop = lambda _ev: None  # noqa: E731
        try:
            attached = await agent.handle_attach({"type": "attach", "target": "https://example.test/"}, noop)
            detached = await agent.handle_detach({"type": "detach", "target": "https://example.test/"}, noop)
            sessions = await agent.sessions()
            state = sessions.state("T1")
        finally:
            await agent.close()
        assert attached["tabId"] == "T1"
        assert detached == {"detached": True, "tabId": "T1"}
        assert state is SessionState.DETACHED
        assert client.created == []

    asyncio.run(_run())


def test_memory_store_falls_back_to_title() -> None:
    from deskagent.storage import MemoryScriptStore

    untitled = {"title": "Archive mail", "description": "Archive every read message", "steps": []}
    store = MemoryScriptStore([SEARCH, untitled])
    assert store.get("search")["title"] == "Search the site"
    assert store.get("ARCHIVE mail ")["steps"] == []
    assert store.get("archive") is None


def test_process_intent_runs_a_script_without_id() -> None:
    async def _run() -> None:
        doc = {
            "title": "Archive mail",
            "description": "Archive every read message",
            "targetUrl": "https://example.test/",
            "steps": [{"type": "click", "selectors": "#go"}],
        }
        _client, _page, agent = _agent([doc])
        try:
            out = await agent.handle_process_intent(
                {"type": "processIntent", "text": "archive mail"}, lambda _ev: None
            )
        finally:
            await agent.close()
        assert out["intent"]["scriptReference"] == "Archive mail"
        assert out["result"]["success"] is True, out["result"]

    asyncio.run(_run())
