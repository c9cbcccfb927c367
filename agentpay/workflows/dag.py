"""
Graph utilities for workflow traversal and planning.

All functions operate on a WorkflowGraph and are pure (no side effects, no
I/O) so they can be called safely from the validator, the CLI, and the
orchestrator alike.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Any, Optional

from agentpay.exceptions import WorkflowValidationError
from agentpay.types import StepType, WorkflowGraph, WorkflowStep

if TYPE_CHECKING:
    from agentpay.workflows.expressions import ExpressionEvaluator


# ── Lookup helpers ────────────────────────────────────────────────────────────


def step_map(graph: WorkflowGraph) -> dict[str, WorkflowStep]:
    """Return ``{step_id: step}``.  On duplicate ids the first step wins."""
    mapping: dict[str, WorkflowStep] = {}
    for step in graph.steps:
        mapping.setdefault(step.id, step)
    return mapping


def get_triggers(graph: WorkflowGraph) -> list[WorkflowStep]:
    return [s for s in graph.steps if s.type == StepType.TRIGGER]


def get_trigger(graph: WorkflowGraph) -> WorkflowStep:
    """Return the single TRIGGER step.

    Raises:
        WorkflowValidationError: if the graph has zero or several triggers.
    """
    triggers = get_triggers(graph)
    if len(triggers) != 1:
        msg = f"Workflow must have exactly one TRIGGER step, found {len(triggers)}"
        raise WorkflowValidationError(msg, violations=[msg])
    return triggers[0]


def successors(step: WorkflowStep) -> list[str]:
    """Every step id reachable in one hop.

    Order: success edge, failure edge, condition targets in declaration
    order, then the retry fallback.  Duplicates are dropped.
    """
    out: list[str] = []
    conns = step.connections
    candidates = [conns.success_step_id, conns.failure_step_id]
    candidates += [c.next_step_id for c in conns.conditions]
    candidates.append(step.error_handling.fallback_step_id)
    for target in candidates:
        if target and target not in out:
            out.append(target)
    return out


# ── Cycle detection ──────────────────────────────────────────────────────────


def find_cycles(graph: WorkflowGraph) -> list[list[str]]:
    """
    Return every cycle found by a recursion-stack DFS.

    A node revisited while still on the stack closes a cycle; the cycle is
    reported as the id path from the revisited node back to itself, e.g.
    ``["a", "b", "c", "a"]``.  Edges to unknown ids are ignored here (the
    validator reports them separately).
    """
    steps = step_map(graph)
    visited: set[str] = set()
    on_stack: list[str] = []
    cycles: list[list[str]] = []

    def visit(node_id: str) -> None:
        visited.add(node_id)
        on_stack.append(node_id)
        for child in successors(steps[node_id]):
            if child not in steps:
                continue
            if child in on_stack:
                start = on_stack.index(child)
                cycles.append(on_stack[start:] + [child])
            elif child not in visited:
                visit(child)
        on_stack.pop()

    for sid in steps:
        if sid not in visited:
            visit(sid)
    return cycles


# ── Reachability and planning ────────────────────────────────────────────────


def reachable_ids(graph: WorkflowGraph) -> set[str]:
    """Ids reachable from the trigger(s), following every edge kind."""
    steps = step_map(graph)
    seen: set[str] = set()
    queue: deque[str] = deque(s.id for s in get_triggers(graph))
    while queue:
        sid = queue.popleft()
        if sid in seen or sid not in steps:
            continue
        seen.add(sid)
        queue.extend(successors(steps[sid]))
    return seen


def plan_order(graph: WorkflowGraph) -> list[WorkflowStep]:
    """
    Breadth-first order from the single TRIGGER.

    Follows success, failure, condition and fallback edges; every step is
    emitted at most once, so the walk terminates even on a cyclic graph.
    Unreachable steps are not part of the plan.

    Raises:
        WorkflowValidationError: if the graph does not have exactly one trigger.
    """
    trigger = get_trigger(graph)
    steps = step_map(graph)
    order: list[WorkflowStep] = []
    seen: set[str] = set()
    queue: deque[str] = deque([trigger.id])
    while queue:
        sid = queue.popleft()
        if sid in seen or sid not in steps:
            continue
        seen.add(sid)
        order.append(steps[sid])
        queue.extend(successors(steps[sid]))
    return order


def next_step(
    current: WorkflowStep,
    graph: WorkflowGraph,
    variables: dict[str, Any],
    evaluator: Optional["ExpressionEvaluator"] = None,
) -> Optional[WorkflowStep]:
    """
    Decide where a successful step leads.

    Conditions are evaluated in array order and the first true one wins.
    A step that declares conditions and matches none ends its branch; a step
    without conditions follows its success edge.  ``None`` means the run
    ends here, which is not an error.
    """
    if evaluator is None:
        from agentpay.workflows.expressions import ExpressionEvaluator

        evaluator = ExpressionEvaluator()

    steps = step_map(graph)
    conditions = current.connections.conditions
    if conditions:
        for cond in conditions:
            if evaluator.evaluate(cond.expression, variables):
                return steps.get(cond.next_step_id)
        return None

    if current.connections.success_step_id:
        return steps.get(current.connections.success_step_id)
    return None
