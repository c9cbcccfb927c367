"""agentpay.workflows: Graph validation, planning, expressions and parameter resolution."""

from .dag import next_step, plan_order
from .expressions import ExpressionEvaluator, evaluate_expression
from .validator import WorkflowValidator
from .variables import lookup_path, resolve_parameters

__all__ = [
    "WorkflowValidator", "ExpressionEvaluator", "evaluate_expression",
    "plan_order", "next_step", "resolve_parameters", "lookup_path",
]
