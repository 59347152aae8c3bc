from __future__ import annotations

import asyncio

from cdp_fakes import FakeCdpClient

from deskagent.cdp.page import PageSession


def test_enter_key_sends_down_then_deferred_up() -> None:
    from deskagent.flow.keys import key_event_payloads

    events, key_up = key_event_payloads({"key": "Enter"})
    assert [e["type"] for e in events] == ["keyDown"]
    assert events[0]["windowsVirtualKeyCode"] == 13
    assert events[0]["text"] == ""
    assert key_up is not None and key_up["type"] == "keyUp"


def test_character_key_adds_char_event() -> None:
    from deskagent.flow.keys import key_event_payloads

    events, key_up = key_event_payloads({"key": "a"})
    assert [e["type"] for e in events] == ["keyDown", "char"]
    assert events[0]["code"] == "KeyA"
    assert events[0]["keyCode"] == 65
    assert events[1]["text"] == "a"
    assert key_up is not None

    events, _ = key_event_payloads({"key": "7", "sendCharEvent": False})
    assert [e["type"] for e in events] == ["keyDown"]
    assert events[0]["code"] == "Digit7"


def test_key_up_direction_and_disabled_auto_release() -> None:
    from deskagent.flow.keys import key_event_payloads

    events, key_up = key_event_payloads({"key": "Tab", "direction": "up"})
    assert [e["type"] for e in events] == ["keyUp"]
    assert key_up is None

    _, key_up = key_event_payloads({"key": "Tab", "autoKeyUp": False})
    assert key_up is None


def test_modifier_mask_bits() -> None:
    from deskagent.flow.keys import modifier_mask

    assert modifier_mask({"modifiers": ["Alt", "ctrl", "meta", "Shift"]}) == 15
    assert modifier_mask({"modifiers": "control"}) == 2
    assert modifier_mask({"ctrlKey": True, "shiftKey": True}) == 10
    assert modifier_mask({}) == 0


def test_explicit_descriptor_fields_win() -> None:
    from deskagent.flow.keys import describe_key

    desc = describe_key({"key": "Enter", "keyDescriptor": {"keyCode": 108, "code": "NumpadEnter"}})
    assert desc.key == "Enter"
    assert desc.key_code == 108
    assert desc.code == "NumpadEnter"
    assert describe_key({"key": "Space"}).produces_text is True


def _page(client: FakeCdpClient) -> PageSession:
    client.add_page("T1")
    client._sessions["S0"] = "T1"  # noqa: SLF001
    return PageSession(client, "S0", "T1")


def test_condition_operators() -> None:
    from deskagent.flow.conditions import evaluate_condition
    from deskagent.resolver.resolver import ElementResolver

    async def _run() -> None:
        client = FakeCdpClient()
        page = _page(client)
        fake = client.pages["T1"]
        fake.add("#banner")
        fake.expressions["document.title"] = "Search results"
        fake.expressions["items.length"] = 3
        fake.expressions["window.flag"] = 0
        resolver = ElementResolver()

        assert await evaluate_condition({"operator": "exists", "field": "#banner"}, page, resolver)
        assert not await evaluate_condition({"operator": "exists", "selectors": ["#nope"]}, page, resolver)
        assert await evaluate_condition(
            {"operator": "exists", "field": "#nope", "negate": True}, page, resolver
        )
        assert await evaluate_condition(
            {"operator": "equals", "expression": "document.title", "value": "Search results"}, page, resolver
        )
        # Substituted values are strings.
        assert await evaluate_condition(
            {"operator": "equals", "expression": "items.length", "value": "3"}, page, resolver
        )
        assert await evaluate_condition(
            {"operator": "contains", "expression": "document.title", "value": "results"}, page, resolver
        )
        assert not await evaluate_condition({"operator": "truthy", "expression": "window.flag"}, page, resolver)

    asyncio.run(_run())
