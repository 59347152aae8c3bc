from __future__ import annotations

import asyncio
from typing import Any

import pytest
from cdp_fakes import FakeCdpClient

from deskagent.config import AgentConfig

SEARCH_SCRIPT: dict[str, Any] = {
    "id": "search",
    "title": "Search the site",
    "description": "Type a query and submit",
    "parameters": {"q": "hello"},
    "targetUrl": "https://example.test/",
    "steps": [
        {"type": "navigate", "url": "https://example.test/search"},
        {"type": "type", "selectors": ["#q"], "value": "{{q}}"},
        {"type": "click", "selectors": [["#missing", "#go"]]},
    ],
}


def _setup(**cfg: Any):  # noqa: ANN202
    from deskagent.flow.interpreter import StepInterpreter
    from deskagent.session_manager import SessionManager

    client = FakeCdpClient()
    page = client.add_page("T1", "https://example.test/")
    page.add("#q", tag="input")
    page.add("#go", tag="button", x=100, y=200)
    config = AgentConfig(reattach_backoff_s=0.0, cdp_timeout=1.0, action_timeout=0.2, **cfg)
    sessions = SessionManager(client, config, settle_delay=0.0)
    return client, page, sessions, StepInterpreter(sessions, config=config)


def test_three_step_script_reports_three_ordered_progress_events() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        client, page, sessions, interpreter = _setup()
        events: list[dict[str, Any]] = []
        try:
            result = await interpreter.run(parse_script(SEARCH_SCRIPT), progress=events.append)
        finally:
            await sessions.close()

        assert result.success is True
        assert result.code == "success"
        assert result.steps_completed == 3
        assert result.tab_id == "T1"
        assert [(e["stepIndex"], e["kind"]) for e in events] == [(0, "navigate"), (1, "type"), (2, "click")]
        assert all(e["scriptId"] == "search" for e in events)
        assert page.url == "https://example.test/search"
        assert page.typed == [("#q", "hello")]
        presses = [p for p in client.methods("Input.dispatchMouseEvent") if p["type"] == "mousePressed"]
        assert presses == [{"type": "mousePressed", "x": 150.0, "y": 220.0, "button": "left", "clickCount": 1}]

    asyncio.run(_run())


def test_override_parameter_reaches_the_page() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        _client, page, sessions, interpreter = _setup()
        try:
            result = await interpreter.run(parse_script(SEARCH_SCRIPT), {"q": "override"})
        finally:
            await sessions.close()
        assert result.success
        assert page.typed == [("#q", "override")]

    asyncio.run(_run())


def test_missing_element_fails_with_step_index_and_kind() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        _client, _page, sessions, interpreter = _setup()
        doc = dict(SEARCH_SCRIPT, steps=[{"type": "wait", "duration": 0}, {"type": "click", "selectors": "#nope"}])
        events: list[dict[str, Any]] = []
        try:
            result = await interpreter.run(parse_script(doc), progress=events.append)
        finally:
            await sessions.close()
        assert result.success is False
        assert result.code == "StepFailed"
        assert result.error["stepIndex"] == 1
        assert result.error["kind"] == "click"
        assert result.error["cause"] == "NotFound"
        assert result.steps_completed == 1
        assert len(events) == 1

    asyncio.run(_run())


def test_detach_mid_click_reattaches_and_retries() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        client, _page, sessions, interpreter = _setup()
        client.detach_on(lambda method, params: method == "Input.dispatchMouseEvent", times=1)
        try:
            result = await interpreter.run(parse_script(SEARCH_SCRIPT))
        finally:
            await sessions.close()
        assert result.success is True, result.error
        assert client.attach_calls == ["T1", "T1"]
        assert result.steps_completed == 3

    asyncio.run(_run())


def test_second_detach_in_one_run_is_session_lost() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        client, _page, sessions, interpreter = _setup()
        client.detach_on(lambda method, params: method == "Input.dispatchMouseEvent", times=2)
        try:
            result = await interpreter.run(parse_script(SEARCH_SCRIPT))
        finally:
            await sessions.close()
        assert result.success is False
        assert result.code == "SessionLost"
        assert result.error["details"]["stepIndex"] == 2
        assert result.error["details"]["kind"] == "click"
        assert client.attach_calls == ["T1", "T1"]

    asyncio.run(_run())


def test_missing_target_is_not_found() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        _client, _page, sessions, interpreter = _setup()
        doc = {k: v for k, v in SEARCH_SCRIPT.items() if k != "targetUrl"}
        result = await interpreter.run(parse_script(doc))
        await sessions.close()
        assert result.code == "NotFound"

    asyncio.run(_run())


def test_condition_skip_loop_and_stored_variables() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        client, page, sessions, interpreter = _setup()
        page.expressions["document.title"] = "Inbox"
        page.expressions["2 + 2"] = 4
        doc = {
            "id": "loops",
            "targetUrl": "T1",
            "parameters": {"n": "3"},
            "steps": [
                {"type": "click", "selectors": "#go", "condition": {"field": "#banner"}},
                {"type": "evaluate", "expression": "2 + 2", "storeAs": "sum"},
                {"type": "find-element", "selectors": ["#q"], "storeAs": "field"},
                {
                    "type": "wait",
                    "duration": 0,
                    "loop": {
                        "iterations": "{{n}}",
                        "steps": [{"type": "type", "selectors": "{{field}}", "value": "{{sum}}-{{loopIndex}}"}],
                    },
                },
                {
                    "type": "nested-steps",
                    "condition": {"operator": "contains", "expression": "document.title", "value": "Inbox"},
                    "steps": [{"type": "wait", "duration": 0}],
                },
            ],
        }
        events: list[dict[str, Any]] = []
        try:
            result = await interpreter.run(parse_script(doc), progress=events.append)
        finally:
            await sessions.close()

        assert result.success, result.error
        # The click was skipped: no mouse input at all.
        assert client.methods("Input.dispatchMouseEvent") == []
        assert page.typed == [("#q", "4-0"), ("#q", "4-1"), ("#q", "4-2")]
        paths = [tuple(e["path"]) for e in events]
        assert paths == [(1,), (2,), (3,), (3, 0), (3, 0), (3, 0), (4, 0), (4,)]
        assert [e["stepIndex"] for e in events] == [1, 2, 3, 3, 3, 3, 4, 4]

    asyncio.run(_run())


def test_wait_for_expression_needs_literal_true() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        _client, page, sessions, interpreter = _setup()
        page.expressions["window.ready"] = "true"
        doc = {
            "targetUrl": "T1",
            "steps": [{"type": "wait-for-expression", "expression": "window.ready", "timeout": 50}],
        }
        try:
            result = await interpreter.run(parse_script(doc))
        finally:
            await sessions.close()
        assert result.code == "StepFailed"
        assert result.error["cause"] == "Timeout"

    asyncio.run(_run())


def test_key_event_focuses_last_typed_field() -> None:
    from deskagent.flow.script import parse_script
    from deskagent.resolver.js import REF_ATTRIBUTE

    async def _run() -> None:
        client, _page, sessions, interpreter = _setup()
        doc = {
            "targetUrl": "T1",
            "steps": [
                {"type": "type", "selectors": "#q", "value": "x"},
                {"type": "key-event", "key": "Enter", "modifiers": ["shift"], "keyUpDelay": 0},
            ],
        }
        try:
            result = await interpreter.run(parse_script(doc))
        finally:
            await sessions.close()
        assert result.success, result.error
        keys = client.methods("Input.dispatchKeyEvent")
        assert [k["type"] for k in keys] == ["keyDown", "keyUp"]
        assert keys[0]["modifiers"] == 8
        focus = [p["expression"] for p in client.methods("Runtime.evaluate") if '"anyFocusable"' in p["expression"]]
        assert len(focus) == 1
        assert REF_ATTRIBUTE in focus[0]

    asyncio.run(_run())


def test_cancel_stops_before_next_step() -> None:
    from deskagent.flow.interpreter import ExecutionContext
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        _client, _page, sessions, interpreter = _setup()
        ctx = ExecutionContext(script_id="c")
        doc = {"targetUrl": "T1", "steps": [{"type": "wait", "duration": 0}, {"type": "wait", "duration": 0}]}

        def _progress(event: dict[str, Any]) -> None:
            ctx.cancel()

        try:
            result = await interpreter.run(parse_script(doc), context=ctx, progress=_progress)
        finally:
            await sessions.close()
        assert result.code == "Cancelled"
        assert result.steps_completed == 1

    asyncio.run(_run())


def test_detach_debugger_parameter_ends_session() -> None:
    from deskagent.flow.script import parse_script
    from deskagent.session_manager import SessionState

    async def _run() -> None:
        _client, _page, sessions, interpreter = _setup()
        doc = {"targetUrl": "T1", "steps": [{"type": "wait", "duration": 0}]}
        try:
            result = await interpreter.run(parse_script(doc), {"detachDebugger": True})
            assert result.success
            assert sessions.state("T1") is SessionState.DETACHED
            result = await interpreter.run(parse_script(doc))
            assert sessions.state("T1") is SessionState.ATTACHED
        finally:
            await sessions.close()

    asyncio.run(_run())


def test_navigate_wait_click_scenario_reports_three_events() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        client, page, sessions, interpreter = _setup()
        page.add("#a", x=0, y=0)
        doc = {
            "id": "scenario",
            "targetUrl": "https://example.test/",
            "steps": [
                {"type": "navigate", "url": "https://example.test/next"},
                {"type": "waitForElement", "selectors": ["#a"]},
                {"type": "click", "selectors": ["#a"]},
            ],
        }
        events: list[dict[str, Any]] = []
        try:
            result = await interpreter.run(parse_script(doc), progress=events.append)
        finally:
            await sessions.close()
        assert result.success is True, result.error
        assert result.steps_completed == 3
        assert [(e["stepIndex"], e["kind"]) for e in events] == [
            (0, "navigate"),
            (1, "wait-for-element"),
            (2, "click"),
        ]
        assert page.url == "https://example.test/next"
        presses = [p for p in client.methods("Input.dispatchMouseEvent") if p["type"] == "mousePressed"]
        assert [(p["x"], p["y"]) for p in presses] == [(50.0, 20.0)]

    asyncio.run(_run())


def test_loop_condition_is_checked_before_each_iteration() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        _client, page, sessions, interpreter = _setup()
        answers = iter([True, True, False, True])
        page.expressions["window.more"] = lambda: next(answers)
        doc = {
            "targetUrl": "T1",
            "steps": [
                {
                    "type": "wait",
                    "duration": 0,
                    "loop": {
                        "iterations": 5,
                        "condition": {"field": "#banner"},
                        "steps": [{"type": "type", "selectors": "#q", "value": "never"}],
                    },
                },
                {
                    "type": "wait",
                    "duration": 0,
                    "loop": {
                        "iterations": 5,
                        "condition": {"expression": "window.more"},
                        "steps": [{"type": "type", "selectors": "#q", "value": "{{loopIndex}}"}],
                    },
                },
            ],
        }
        try:
            result = await interpreter.run(parse_script(doc))
        finally:
            await sessions.close()
        assert result.success, result.error
        # The first loop never starts; the second stops once the condition turns false.
        assert page.typed == [("#q", "0"), ("#q", "1")]

    asyncio.run(_run())


def test_wait_between_iterations_skips_the_last(monkeypatch: pytest.MonkeyPatch) -> None:
    from deskagent.flow.script import parse_script

    real_sleep = asyncio.sleep
    pauses: list[float] = []

    async def _sleep(delay: float, *args: Any, **kwargs: Any) -> Any:
        if delay == 0.007:
            pauses.append(delay)
        return await real_sleep(delay, *args, **kwargs)

    monkeypatch.setattr(asyncio, "sleep", _sleep)

    async def _run() -> None:
        _client, page, sessions, interpreter = _setup()
        doc = {
            "targetUrl": "T1",
            "steps": [
                {
                    "type": "wait",
                    "duration": 0,
                    "loop": {
                        "iterations": 3,
                        "waitBetweenMs": 7,
                        "steps": [{"type": "type", "selectors": "#q", "value": "x"}],
                    },
                }
            ],
        }
        try:
            result = await interpreter.run(parse_script(doc))
        finally:
            await sessions.close()
        assert result.success, result.error
        assert len(page.typed) == 3

    asyncio.run(_run())
    assert pauses == [0.007, 0.007]


def test_failure_inside_nested_loop_aborts_the_script() -> None:
    from deskagent.flow.script import parse_script

    async def _run() -> None:
        _client, page, sessions, interpreter = _setup()
        doc = {
            "targetUrl": "T1",
            "steps": [
                {"type": "wait", "duration": 0},
                {
                    "type": "wait",
                    "duration": 0,
                    "loop": {
                        "iterations": 2,
                        "steps": [
                            {
                                "type": "wait",
                                "duration": 0,
                                "loop": {"iterations": 2, "steps": [{"type": "click", "selectors": "#nope"}]},
                            }
                        ],
                    },
                },
                {"type": "type", "selectors": "#q", "value": "after"},
            ],
        }
        events: list[dict[str, Any]] = []
        try:
            result = await interpreter.run(parse_script(doc), progress=events.append)
        finally:
            await sessions.close()
        assert result.code == "StepFailed"
        assert result.error["stepIndex"] == 1
        assert result.error["kind"] == "click"
        assert result.error["path"] == [1, 0, 0]
        assert result.error["cause"] == "NotFound"
        assert page.typed == []
        assert all(e["stepIndex"] < 2 for e in events)

    asyncio.run(_run())
