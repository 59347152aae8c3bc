from __future__ import annotations

import pytest


def test_parse_script_builds_step_tree() -> None:
    from deskagent.flow.script import StepKind, parse_script

    script = parse_script(
        {
            "id": "search",
            "title": "Search",
            "parameters": {"q": "hello"},
            "targetUrl": "https://example.test/",
            "steps": [
                {"type": "navigate", "url": "https://example.test/search"},
                {"type": "doubleClick", "selectors": ["#a", ["#b", "aria/B"]]},
                {
                    "type": "nested-steps",
                    "steps": [{"type": "keyDown", "key": "Enter"}],
                    "loop": {"iterations": 2, "waitBetween": 50, "steps": [{"type": "wait", "duration": 1}]},
                },
            ],
        }
    )
    assert script.script_id == "search"
    assert script.target_url == "https://example.test/"
    kinds = [s.kind for s in script.steps]
    assert kinds == [StepKind.NAVIGATE, StepKind.CLICK, StepKind.NESTED_STEPS]
    click = script.steps[1]
    assert click.raw["clickCount"] == 2
    assert click.selectors == [["#a"], ["#b", "aria/B"]]
    nested = script.steps[2]
    assert nested.steps[0].kind is StepKind.KEY_EVENT
    assert nested.steps[0].raw["direction"] == "down"
    assert nested.loop is not None
    assert nested.loop.iterations == 2
    assert nested.loop.wait_between_ms == 50
    assert nested.loop.steps[0].kind is StepKind.WAIT


def test_unknown_step_kind_is_rejected_at_load() -> None:
    from deskagent.errors import MalformedScript
    from deskagent.flow.script import parse_script

    with pytest.raises(MalformedScript) as excinfo:
        parse_script({"steps": [{"type": "navigate", "url": "x"}, {"type": "teleport"}]})
    assert excinfo.value.code == "MalformedScript"
    assert excinfo.value.details["where"] == "steps[1]"


@pytest.mark.parametrize(
    "step",
    [
        {"type": "click"},
        {"type": "navigate"},
        {"type": "wait-for-expression"},
        {"type": "key-event"},
        {"type": "evaluate"},
        {"type": "click", "selectors": "#a", "condition": {"operator": "between"}},
        {"type": "click", "selectors": "#a", "loop": {"iterations": -1}},
        {"kind": ""},
        "click",
    ],
)
def test_invalid_steps_are_rejected(step: object) -> None:
    from deskagent.errors import MalformedScript
    from deskagent.flow.script import parse_steps

    with pytest.raises(MalformedScript):
        parse_steps([step])


def test_conditions_are_normalised() -> None:
    from deskagent.flow.script import parse_step

    bare = parse_step({"type": "wait", "condition": "window.ready"})
    assert bare.condition == {"operator": "truthy", "expression": "window.ready"}
    exists = parse_step({"type": "wait", "condition": {"field": "#banner", "negate": True}})
    assert exists.condition == {"field": "#banner", "negate": True, "operator": "exists"}


def test_placeholder_loop_count_defers_validation() -> None:
    from deskagent.flow.script import parse_step

    step = parse_step({"type": "wait", "loop": {"iterations": "{{n}}"}})
    assert step.loop is not None
    assert step.loop.iterations == 1


def test_missing_parameters_is_a_no_op() -> None:
    from deskagent.flow.script import parse_script

    script = parse_script({"title": "t", "steps": []}, script_id="abc")
    assert script.parameters == {}
    assert script.script_id == "abc"
