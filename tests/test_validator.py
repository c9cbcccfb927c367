"""WorkflowValidator: every structural error and warning, and determinism."""

import pytest

from agentpay.types import StepType
from agentpay.workflows.validator import WorkflowValidator

from conftest import make_graph, make_step


@pytest.fixture
def validator(config):
    return WorkflowValidator(config)


def _valid_graph():
    return make_graph(
        make_step("start", StepType.TRIGGER, next_id="charge"),
        make_step("charge", next_id="notify"),
        make_step("notify"),
    )


def test_valid_graph(validator, registry):
    result = validator.validate(_valid_graph(), registry=registry)
    assert result.valid
    assert result.errors == []
    assert result.warnings == []


def test_empty_graph(validator):
    result = validator.validate(make_graph())
    assert not result.valid
    assert result.errors == ["Workflow has no steps."]


def test_too_many_steps(validator):
    steps = [make_step("start", StepType.TRIGGER, next_id="s0")]
    steps += [make_step(f"s{i}", next_id=f"s{i + 1}" if i < 4 else None) for i in range(5)]
    result = validator.validate(make_graph(*steps), max_steps=3)
    assert "Workflow has 6 steps; the limit is 3." in result.errors


def test_duplicate_ids(validator):
    result = validator.validate(make_graph(
        make_step("start", StepType.TRIGGER, next_id="a"),
        make_step("a"),
        make_step("a"),
    ))
    assert "Duplicate step id 'a'." in result.errors


@pytest.mark.parametrize("trigger_count", [0, 2])
def test_trigger_count(validator, trigger_count):
    steps = [make_step(f"t{i}", StepType.TRIGGER) for i in range(trigger_count)]
    steps.append(make_step("a"))
    result = validator.validate(make_graph(*steps))
    assert f"Workflow must have exactly one TRIGGER step, found {trigger_count}." in result.errors


def test_dangling_connections(validator):
    result = validator.validate(make_graph(
        make_step("start", StepType.TRIGGER, next_id="ghost"),
        make_step("a", failure_id="nowhere", fallback_id="void", conditions=[("x > 1", "missing")]),
    ))
    assert "Step 'start': success connection references unknown step 'ghost'." in result.errors
    assert "Step 'a': failure connection references unknown step 'nowhere'." in result.errors
    assert "Step 'a': fallback connection references unknown step 'void'." in result.errors
    assert "Step 'a': condition[0] connection references unknown step 'missing'." in result.errors


def test_condition_step_without_branches(validator):
    result = validator.validate(make_graph(
        make_step("start", StepType.TRIGGER, next_id="check"),
        make_step("check", StepType.CONDITION, tool_type="condition"),
    ))
    assert "CONDITION step 'check' declares no conditional branches." in result.errors


def test_empty_condition_expression(validator):
    result = validator.validate(make_graph(
        make_step("start", StepType.TRIGGER, next_id="check"),
        make_step("check", StepType.CONDITION, tool_type="condition", conditions=[("  ", "end")]),
        make_step("end"),
    ))
    assert "Step 'check': condition[0] has an empty expression." in result.errors


def test_unknown_tool_type_only_with_registry(validator, registry):
    graph = make_graph(
        make_step("start", StepType.TRIGGER, next_id="a"),
        make_step("a", tool_type="teleport"),
    )
    assert validator.validate(graph).valid
    result = validator.validate(graph, registry=registry)
    assert "Step 'a': unknown tool type 'teleport'." in result.errors


def test_cycle_is_an_error(validator):
    result = validator.validate(make_graph(
        make_step("start", StepType.TRIGGER, next_id="a"),
        make_step("a", next_id="b"),
        make_step("b", next_id="a"),
    ))
    assert "Cycle detected: a -> b -> a." in result.errors


def test_long_timeout_and_unreachable_are_warnings(validator):
    result = validator.validate(make_graph(
        make_step("start", StepType.TRIGGER, next_id="slow"),
        make_step("slow", timeout_ms=600_000),
        make_step("orphan"),
    ))
    assert result.valid
    assert "Step 'slow': timeout 600000ms exceeds 300000ms." in result.warnings
    assert "Step 'orphan' is unreachable from the trigger." in result.warnings


def test_every_error_is_reported_at_once(validator):
    result = validator.validate(make_graph(
        make_step("a", next_id="ghost"),
        make_step("a"),
    ))
    assert len(result.errors) == 3


def test_validation_is_deterministic(validator, registry):
    graph = make_graph(
        make_step("start", StepType.TRIGGER, next_id="a"),
        make_step("a", next_id="b", tool_type="teleport"),
        make_step("b", next_id="a"),
        make_step("orphan"),
    )
    snapshot = graph.model_dump()
    first = validator.validate(graph, registry=registry)
    second = validator.validate(graph, registry=registry)
    assert first == second
    assert graph.model_dump() == snapshot
