import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from execution_context import ExecutionContext
from loop_processor import iterate
from scenario_models import LoopStep


def make_loop(loop: dict, **kwargs) -> LoopStep:
    return LoopStep.model_validate({"id": "loop1", "type": "loop", "loop": loop, **kwargs})


def test_for_each_over_params():
    ctx = ExecutionContext(params={"users": ["a", "b", "c"]})
    step = make_loop({"type": "forEach", "source": "params.users", "itemAlias": "user"})
    frames = list(iterate(step, ctx))
    assert [f.item for f in frames] == ["a", "b", "c"]
    assert [f.index for f in frames] == [0, 1, 2]
    assert all(f.total == 3 for f in frames)
    assert frames[0].variable_name == "loop1"
    assert frames[0].as_scope()["user"] == "a"


def test_for_each_template_source_and_variable_name():
    ctx = ExecutionContext(params={"users": [1, 2]})
    step = make_loop({"type": "forEach", "source": "${params.users}"}, variableName="u")
    frames = list(iterate(step, ctx))
    assert [f.item for f in frames] == [1, 2]
    assert frames[1].path_label == "u:1"


def test_for_each_count_field_repeats_items():
    ctx = ExecutionContext(params={"items": [{"n": 2}, {"n": 1}]})
    step = make_loop({"type": "forEach", "source": "params.items", "countField": "n"})
    frames = list(iterate(step, ctx))
    assert len(frames) == 3
    assert [f.index for f in frames] == [0, 0, 1]
    assert [f.repeat for f in frames] == [0, 1, 0]
    assert [f.iteration for f in frames] == [0, 1, 2]


def test_for_each_count_field_defaults_to_one():
    ctx = ExecutionContext(params={"items": [{"n": "abc"}, {"n": 0}, {}]})
    step = make_loop({"type": "forEach", "source": "params.items", "countField": "n"})
    assert len(list(iterate(step, ctx))) == 3


def test_for_each_non_array_source_warns():
    ctx = ExecutionContext(params={"users": "not-a-list"})
    step = make_loop({"type": "forEach", "source": "params.users"})
    warnings = []
    assert list(iterate(step, ctx, warnings.append)) == []
    assert len(warnings) == 1
    assert "did not resolve to an array" in warnings[0]


def test_count_loop_literal_and_expression():
    ctx = ExecutionContext(params={"n": "4"})
    assert [f.index for f in iterate(make_loop({"type": "count", "count": 3}), ctx)] == [0, 1, 2]
    assert len(list(iterate(make_loop({"type": "count", "count": "${params.n}"}), ctx))) == 4


def test_count_loop_negative_and_non_numeric():
    ctx = ExecutionContext(params={"word": "many"})
    assert list(iterate(make_loop({"type": "count", "count": -2}), ctx)) == []
    warnings = []
    assert list(iterate(make_loop({"type": "count", "count": "${params.word}"}), ctx, warnings.append)) == []
    assert warnings and "not numeric" in warnings[0]


def test_while_loop_is_lazy():
    ctx = ExecutionContext(params={"remaining": 3})
    step = make_loop({
        "type": "while",
        "condition": {"source": "params", "field": "remaining", "operator": ">", "value": "0"},
    })
    seen = []
    for frame in iterate(step, ctx):
        seen.append(frame.index)
        assert frame.total == frame.index + 1
        ctx.params["remaining"] -= 1
    assert seen == [0, 1, 2]


def test_while_always_true_hits_safety_cap():
    ctx = ExecutionContext(params={"go": True})
    step = make_loop(
        {"type": "while", "condition": {"source": "params", "field": "go", "operator": "==", "value": "true"}},
        maxIterations=5,
    )
    warnings = []
    frames = list(iterate(step, ctx, warnings.append))
    assert len(frames) == 5
    assert len(warnings) == 1
    assert "maxIterations (5)" in warnings[0]


def test_cap_precedence_step_then_loop_then_default():
    ctx = ExecutionContext()
    loop_cap = make_loop({"type": "count", "count": 10, "maxIterations": 4})
    assert len(list(iterate(loop_cap, ctx))) == 4

    step_cap = make_loop({"type": "count", "count": 10, "maxIterations": 4}, maxIterations=2)
    assert len(list(iterate(step_cap, ctx))) == 2

    assert len(list(iterate(make_loop({"type": "count", "count": 10}), ctx, default_max=3))) == 3


def test_cap_equal_to_length_has_no_warning():
    ctx = ExecutionContext(params={"items": [1, 2]})
    step = make_loop({"type": "forEach", "source": "params.items"}, maxIterations=2)
    warnings = []
    assert len(list(iterate(step, ctx, warnings.append))) == 2
    assert warnings == []
