"""
WorkflowValidator: structural correctness checker for WorkflowGraph.

Every check is a non-destructive read of the graph.  Hard problems land in
``ValidationResult.errors``; soft ones (unreachable steps, very long
timeouts) in ``ValidationResult.warnings``.  Validation is deterministic, so
validating the same graph twice yields equal results.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from agentpay.config import AgentPayConfig
from agentpay.types import StepType, ValidationResult, WorkflowGraph

from .dag import find_cycles, get_triggers, reachable_ids, step_map

if TYPE_CHECKING:
    from agentpay.tools.registry import ToolRegistry


class WorkflowValidator:
    """
    Validates the structural integrity of a WorkflowGraph.

    Usage::

        validator = WorkflowValidator()
        result = validator.validate(graph, registry=registry)
        if not result.valid:
            raise WorkflowValidationError("Invalid workflow", violations=result.errors)

    All checks are run even if earlier ones fail, so callers get the full
    error list in one shot.
    """

    def __init__(self, config: Optional[AgentPayConfig] = None):
        self.config = config or AgentPayConfig()

    def validate(
        self,
        graph: WorkflowGraph,
        registry: Optional["ToolRegistry"] = None,
        max_steps: Optional[int] = None,
        long_timeout_ms: Optional[int] = None,
    ) -> ValidationResult:
        """
        Run all structural checks on a WorkflowGraph.

        Args:
            graph:           The graph to validate.
            registry:        Optional ToolRegistry; unknown tool types are only
                             reported when one is given.
            max_steps:       Step count limit (defaults to config).
            long_timeout_ms: Timeouts above this produce a warning (defaults to config).
        """
        max_steps = max_steps if max_steps is not None else self.config.max_workflow_steps
        long_timeout_ms = (
            long_timeout_ms if long_timeout_ms is not None else self.config.long_timeout_warning_ms
        )
        errors: list[str] = []
        warnings: list[str] = []
        steps = graph.steps

        # ── Size ─────────────────────────────────────────────────────────────
        if not steps:
            errors.append("Workflow has no steps.")
            return ValidationResult(errors=errors, warnings=warnings)
        if len(steps) > max_steps:
            errors.append(f"Workflow has {len(steps)} steps; the limit is {max_steps}.")

        # ── Unique ids ───────────────────────────────────────────────────────
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                errors.append(f"Duplicate step id '{step.id}'.")
            seen.add(step.id)

        # ── Exactly one trigger ──────────────────────────────────────────────
        triggers = get_triggers(graph)
        if len(triggers) != 1:
            errors.append(
                f"Workflow must have exactly one TRIGGER step, found {len(triggers)}."
            )

        # ── Connection targets ───────────────────────────────────────────────
        known = step_map(graph)
        for step in steps:
            conns = step.connections
            targets = [
                ("success", conns.success_step_id),
                ("failure", conns.failure_step_id),
                ("fallback", step.error_handling.fallback_step_id),
            ]
            targets += [(f"condition[{i}]", c.next_step_id) for i, c in enumerate(conns.conditions)]
            for kind, target in targets:
                if target and target not in known:
                    errors.append(
                        f"Step '{step.id}': {kind} connection references unknown step '{target}'."
                    )

            # ── Condition branches ───────────────────────────────────────────
            if step.type == StepType.CONDITION and not conns.conditions:
                errors.append(f"CONDITION step '{step.id}' declares no conditional branches.")
            for i, cond in enumerate(conns.conditions):
                if not cond.expression or not cond.expression.strip():
                    errors.append(f"Step '{step.id}': condition[{i}] has an empty expression.")

            # ── Tool availability ────────────────────────────────────────────
            if registry is not None and registry.get(step.tool_type) is None:
                errors.append(f"Step '{step.id}': unknown tool type '{step.tool_type}'.")

            # ── Long timeouts ────────────────────────────────────────────────
            if step.timeout_ms > long_timeout_ms:
                warnings.append(
                    f"Step '{step.id}': timeout {step.timeout_ms}ms exceeds {long_timeout_ms}ms."
                )

        # ── Cycles ───────────────────────────────────────────────────────────
        for cycle in find_cycles(graph):
            errors.append(f"Cycle detected: {' -> '.join(cycle)}.")

        # ── Reachability ─────────────────────────────────────────────────────
        if triggers:
            reachable = reachable_ids(graph)
            for step in steps:
                if step.id not in reachable:
                    warnings.append(f"Step '{step.id}' is unreachable from the trigger.")

        return ValidationResult(errors=errors, warnings=warnings)
