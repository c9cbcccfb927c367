"""@tool decorator for registering functions as AgentPay tools.

Usage:
    @tool(
        name="charge_card",
        description="Charge a stored card",
        category=ToolCategory.PAYMENT,
        parameters=[{"name": "amount", "type": "number", "required": True}],
    )
    async def charge_card(params: dict, context: ExecutionContext) -> dict:
        ...

Every tool callable receives ``(params, context)``.  The decorated function is
returned unchanged apart from a ``_agentpay_tool`` attribute holding the
built ``Tool``; the same entry is recorded in a module-level catalogue.
"""

from typing import Any, Callable, Optional, Union

from agentpay.tools.registry import RollbackFn, Tool, ToolRegistry, ValidateFn
from agentpay.types import ToolCategory, ToolDefinition, ToolParameter

# Global catalogue for decorated tools, collected at import time
_registered_tools: dict[str, Tool] = {}


def tool(
    name: str = None,
    description: str = None,
    category: ToolCategory = ToolCategory.CUSTOM,
    parameters: Optional[list[Union[ToolParameter, dict]]] = None,
    version: str = "1.0.0",
    required_permissions: Optional[list[str]] = None,
    timeout_ms: Optional[int] = None,
    retryable: bool = False,
    cost: float = 0.0,
    requires_approval: bool = False,
    validate: Optional[ValidateFn] = None,
    rollback: Optional[RollbackFn] = None,
):
    """Decorator to register a function as an AgentPay tool.

    Args:
        name: Tool name (defaults to function name)
        description: Tool description (defaults to first docstring line)
        category: Tool category
        parameters: Parameter schema, as ToolParameter objects or plain dicts
        required_permissions: Permission names the caller must hold
        timeout_ms: Hint only; the step's own timeout is what the engine enforces
        validate: Tool-specific check run after the generic schema checks
        rollback: Compensating action ``(output, context)``
    """
    def decorator(func: Callable[..., Any]):
        tool_name = name or func.__name__
        tool_desc = description or (func.__doc__ or "").strip().split("\n")[0]

        definition = ToolDefinition(
            name=tool_name,
            description=tool_desc,
            category=category,
            version=version,
            parameters=[
                p if isinstance(p, ToolParameter) else ToolParameter.model_validate(p)
                for p in (parameters or [])
            ],
            required_permissions=list(required_permissions or []),
            timeout_ms=timeout_ms,
            retryable=retryable,
            cost=cost,
            requires_approval=requires_approval,
        )
        entry = Tool(definition=definition, execute=func, validate=validate, rollback=rollback)
        _registered_tools[tool_name] = entry
        func._agentpay_tool = entry
        return func

    return decorator


def get_registered_tools() -> dict[str, Tool]:
    """Return all tools registered via @tool decorator."""
    return _registered_tools.copy()


def register_decorated_tools(registry: ToolRegistry, names: Optional[list[str]] = None) -> int:
    """Copy decorated tools into a registry.  Returns how many were registered."""
    count = 0
    for tool_name, entry in _registered_tools.items():
        if names is not None and tool_name not in names:
            continue
        registry.register(entry)
        count += 1
    return count
