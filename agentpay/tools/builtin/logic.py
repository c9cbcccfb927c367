"""Built-in logic tools: condition, wait, manual trigger, approval."""

import asyncio
import logging
from typing import Optional

from agentpay.config import AgentPayConfig
from agentpay.tools.plugin import tool
from agentpay.tools.registry import Tool
from agentpay.types import (
    ExecutionContext, ParameterType, ParameterValidation, ToolCategory, ToolDefinition,
    ToolParameter, utcnow,
)
from agentpay.workflows.expressions import ExpressionEvaluator

logger = logging.getLogger(__name__)


def make_condition_tool(evaluator: Optional[ExpressionEvaluator] = None) -> Tool:
    """Build the ``condition`` tool around an expression evaluator."""
    evaluator = evaluator or ExpressionEvaluator()

    async def condition(params: dict, context: ExecutionContext) -> dict:
        """Evaluate a boolean expression; context variables override parameter variables."""
        expression = params["expression"]
        scope = {**(params.get("variables") or {}), **context.variables}
        result = evaluator.evaluate(expression, scope)
        logger.debug(
            "[condition] %r -> %s (execution %s)", expression, result, context.execution_id
        )
        return {"result": result, "expression": expression}

    def validate(params: dict) -> list[str]:
        if not str(params.get("expression") or "").strip():
            return ["Parameter 'expression' must not be empty"]
        return []

    definition = ToolDefinition(
        name="condition",
        description="Evaluate conditional expressions",
        category=ToolCategory.LOGIC,
        parameters=[
            ToolParameter(name="expression", type=ParameterType.STRING, required=True,
                          description="Conditional expression to evaluate"),
            ToolParameter(name="variables", type=ParameterType.OBJECT, default={},
                          description="Variables to use in expression"),
        ],
    )
    return Tool(definition=definition, execute=condition, validate=validate)


def make_wait_tool(config: Optional[AgentPayConfig] = None) -> Tool:
    """Build the ``wait`` tool; bounds come from config (100ms..5min by default)."""
    cfg = config or AgentPayConfig()

    async def wait(params: dict, context: ExecutionContext) -> dict:
        """Pure delay."""
        duration = params["duration"]
        logger.debug("[wait] Sleeping %sms (execution %s)", duration, context.execution_id)
        await asyncio.sleep(duration / 1000)
        return {"waited": duration, "timestamp": utcnow().isoformat()}

    definition = ToolDefinition(
        name="wait",
        description="Wait for a specified duration",
        category=ToolCategory.LOGIC,
        parameters=[
            ToolParameter(name="duration", type=ParameterType.NUMBER, required=True,
                          description="Wait duration in milliseconds",
                          validation=ParameterValidation(min=cfg.wait_min_ms, max=cfg.wait_max_ms)),
        ],
    )
    return Tool(definition=definition, execute=wait)


@tool(
    name="manual_trigger",
    description="Entry point for manually started workflows",
    category=ToolCategory.LOGIC,
)
async def manual_trigger(params: dict, context: ExecutionContext) -> dict:
    return {
        "trigger": {
            "type": "manual",
            "triggered_at": utcnow().isoformat(),
            "initiator_id": context.initiator_id,
        }
    }


@tool(
    name="approval",
    description="Checkpoint step passed once its mandate is approved",
    category=ToolCategory.LOGIC,
    requires_approval=True,
    parameters=[
        {"name": "mandate_id", "type": "string", "description": "Mandate authorizing this step"},
        {"name": "notes", "type": "string", "description": "Free-form approval notes"},
    ],
)
async def approval(params: dict, context: ExecutionContext) -> dict:
    """The gate itself is enforced by the orchestrator; reaching here means it passed."""
    return {
        "approval": {
            "mandate_id": params.get("mandate_id"),
            "approved": True,
            "notes": params.get("notes"),
        }
    }
