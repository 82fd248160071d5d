import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

import pytest
from pydantic import ValidationError

from scenario_models import (
    ConditionGroup,
    ExecutorConfig,
    LoopStep,
    RequestStep,
    Scenario,
    Server,
    StepExecutionRecord,
    StepState,
)


def request(step_id, **kwargs):
    data = {"id": step_id, "type": "request", "serverId": "api", "method": "get", "endpoint": "/x"}
    data.update(kwargs)
    return data


def test_request_step_aliases_and_method_normalization():
    step = RequestStep.model_validate(request("a", timeout=1500, retryConfig={"maxRetries": 2, "retryOnStatus": [429]}))
    assert step.method == "GET"
    assert step.serverRef == "api"
    assert step.timeoutMs == 1500
    assert step.retryConfig.retryOn == [429]
    assert step.waitForResponse is True and step.saveResponse is True


def test_retry_config_defaults():
    step = RequestStep.model_validate(request("a", retryConfig={"maxRetries": 1}))
    assert step.retryConfig.retryOn == [500, 502, 503, 504]
    assert step.retryConfig.retryOnTimeout is False


def test_invalid_method_rejected():
    with pytest.raises(ValidationError):
        RequestStep.model_validate(request("a", method="FETCH"))


def test_loop_variable_name_defaults_to_step_id():
    step = LoopStep.model_validate({"id": "each_user", "type": "loop", "loop": {"type": "count", "count": 2}})
    assert step.variableName == "each_user"


def test_unknown_fields_ignored_and_steps_discriminated():
    scenario = Scenario.model_validate({
        "name": "s",
        "startStepId": "a",
        "steps": [
            request("a", position={"x": 1, "y": 2}),
            {"id": "b", "type": "condition", "branches": []},
            {"id": "g", "type": "group", "stepIds": ["a"]},
        ],
    })
    assert [type(s).__name__ for s in scenario.steps] == ["RequestStep", "ConditionStep", "GroupStep"]


def test_edges_folded_into_next_step_id():
    scenario = Scenario.model_validate({
        "name": "s",
        "startStepId": "a",
        "steps": [
            request("a"),
            request("b"),
            {"id": "c", "type": "condition", "branches": [{"id": "yes", "nextStepId": "a"}]},
        ],
        "edges": [
            {"id": "e1", "sourceStepId": "a", "targetStepId": "b"},
            {"id": "e2", "sourceStepId": "b", "targetStepId": "c"},
            {"id": "e3", "sourceStepId": "c", "targetStepId": "a", "sourceHandle": "branch_yes"},
        ],
    })
    assert scenario.get_step("a").nextStepId == "b"
    assert scenario.get_step("b").nextStepId == "c"
    assert scenario.get_step("c").nextStepId is None


def test_explicit_next_step_id_wins_over_edge():
    scenario = Scenario.model_validate({
        "name": "s",
        "startStepId": "a",
        "steps": [request("a", nextStepId="c"), request("b"), request("c")],
        "edges": [{"sourceStepId": "a", "targetStepId": "b"}],
    })
    assert scenario.get_step("a").nextStepId == "c"


@pytest.mark.parametrize(
    "data,message",
    [
        ({"startStepId": "zzz", "steps": [request("a")]}, "startStepId"),
        ({"startStepId": "a", "steps": [request("a"), request("a")]}, "Duplicate step id"),
        ({"startStepId": "a", "steps": [request("a")], "edges": [{"sourceStepId": "a", "targetStepId": "nope"}]}, "unknown step"),
        ({"startStepId": "a", "steps": [request("a", nextStepId="nope")]}, "unknown step"),
        (
            {"startStepId": "a", "steps": [request("a"), request("b"), request("c")], "edges": [
                {"sourceStepId": "a", "targetStepId": "b"},
                {"sourceStepId": "a", "targetStepId": "c"},
            ]},
            "more than one non-branch edge",
        ),
        (
            {"startStepId": "a", "steps": [{"id": "a", "type": "condition", "branches": [
                {"id": "x", "nextStepId": "", "isDefault": True},
                {"id": "y", "nextStepId": "", "isDefault": True},
            ]}]},
            "more than one default branch",
        ),
    ],
)
def test_scenario_validation_errors(data, message):
    with pytest.raises(ValidationError) as exc_info:
        Scenario.model_validate({"name": "s", **data})
    assert message in str(exc_info.value)


def test_derive_edges():
    scenario = Scenario.model_validate({
        "name": "s",
        "startStepId": "a",
        "steps": [
            request("a", nextStepId="c"),
            {"id": "c", "type": "condition", "branches": [
                {"id": "yes", "nextStepId": "a", "label": "again"},
                {"id": "no", "nextStepId": "", "isDefault": True},
            ]},
        ],
    })
    edges = scenario.derive_edges()
    assert [(e.sourceStepId, e.targetStepId, e.sourceHandle) for e in edges] == [
        ("a", "c", None),
        ("c", "a", "branch_yes"),
    ]


def test_response_condition_requires_step_id():
    with pytest.raises(ValidationError):
        ConditionGroup.model_validate({"operator": "AND", "conditions": [
            {"source": "response", "field": "status", "operator": "exists"},
        ]})


def test_server_base_url_and_timeout_alias():
    server = Server.model_validate({"name": "api", "baseUrl": "http://localhost:8000", "timeout": 1000})
    assert server.timeoutMs == 1000
    with pytest.raises(ValidationError):
        Server.model_validate({"name": "api", "baseUrl": "localhost:8000"})


def test_record_transitions_are_one_way():
    record = StepExecutionRecord(stepId="a", stepType="request")
    assert record.state == StepState.PENDING
    record.transition(StepState.IN_PROGRESS)
    assert record.startedAt is not None
    record.transition(StepState.SUCCESS, attempts=1)
    assert record.endedAt is not None
    assert record.attempts == 1
    with pytest.raises(RuntimeError):
        record.transition(StepState.FAILED)


def test_executor_config_accepts_human_aliases():
    config = ExecutorConfig.model_validate({"Stop On Failure": False, "Max Loop Iterations": 50})
    assert config.stop_on_failure is False
    assert config.max_loop_iterations == 50
    assert ExecutorConfig(max_step_executions=7).max_step_executions == 7


def test_executor_config_ignores_unknown_keys():
    config = ExecutorConfig.model_validate({"debug": True, "Some Future Option": 1})
    assert config.debug is True
    assert "Some Future Option" not in config.model_dump(by_alias=True)
    assert config.model_extra is None
