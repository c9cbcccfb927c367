"""Central registry of all available tools."""

from __future__ import annotations

import copy
import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from agentpay.exceptions import ParameterValidationError, ToolNotFoundError
from agentpay.types import (
    ExecutionContext, ParameterType, ToolCategory, ToolDefinition, ToolParameter,
)

logger = logging.getLogger(__name__)

ToolFn = Callable[[dict, ExecutionContext], Union[Awaitable[Any], Any]]
RollbackFn = Callable[[Any, ExecutionContext], Union[Awaitable[Any], Any]]
ValidateFn = Callable[[dict], list[str]]


@dataclass
class Tool:
    """Registry entry: a definition plus the callables that implement it."""
    definition: ToolDefinition
    execute: ToolFn
    validate: Optional[ValidateFn] = None
    rollback: Optional[RollbackFn] = None

    @property
    def name(self) -> str:
        return self.definition.name


async def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn`` and await the result when it is awaitable."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ToolRegistry:
    """Central registry of all available tools."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.  Re-registering a name replaces the previous entry.

        Raises:
            ValueError: if the entry has no name or no execute callable
        """
        if tool is None or not tool.definition.name:
            raise ValueError("Tool must have a name")
        if not callable(tool.execute):
            raise ValueError(f"Tool '{tool.definition.name}' must provide an execute callable")
        if tool.name in self._tools:
            logger.warning("[Registry] Overwriting existing tool '%s'", tool.name)
        self._tools[tool.name] = tool
        logger.debug("[Registry] Registered tool '%s' (%s)", tool.name, tool.definition.category.value)

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        """Get a tool or fail.

        Raises:
            ToolNotFoundError: if tool not found
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Tool '{name}' not found in registry", tool_name=name)
        return tool

    def remove(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def list_tools(self) -> list[ToolDefinition]:
        """List all registered tool definitions."""
        return [t.definition for t in self._tools.values()]

    def list_by_category(self, category: ToolCategory) -> list[ToolDefinition]:
        return [t.definition for t in self._tools.values() if t.definition.category == category]

    def categories(self) -> list[ToolCategory]:
        """Categories that have at least one tool, in enum order."""
        present = {t.definition.category for t in self._tools.values()}
        return [c for c in ToolCategory if c in present]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    # ── Parameters ───────────────────────────────────────────────────────

    def apply_defaults(self, name: str, params: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of params with schema defaults filled in for absent keys."""
        tool = self.require(name)
        merged = dict(params or {})
        for param in tool.definition.parameters:
            if merged.get(param.name) is None and param.default is not None:
                merged[param.name] = copy.deepcopy(param.default)
        return merged

    def validate_parameters(self, name: str, params: dict[str, Any]) -> tuple[bool, list[str]]:
        """
        Check params against the tool's schema.

        Generic checks run first, in order: required, type, min/max, pattern,
        enum.  The tool's own ``validate`` only runs when those all pass.

        Returns:
            ``(valid, errors)``; ``errors`` lists every violation found.
        """
        tool = self.require(name)
        params = params or {}
        errors: list[str] = []
        for param in tool.definition.parameters:
            errors.extend(_check_parameter(param, params.get(param.name)))

        if not errors and tool.validate is not None:
            errors.extend(tool.validate(params) or [])
        return not errors, errors

    # ── Execution ────────────────────────────────────────────────────────

    async def execute(self, name: str, params: dict[str, Any], context: ExecutionContext) -> Any:
        """Look up, default, validate and run a tool.

        Raises:
            ToolNotFoundError: unknown tool
            ParameterValidationError: params violate the schema; the tool is never called
        """
        tool = self.require(name)
        params = self.apply_defaults(name, params)
        valid, errors = self.validate_parameters(name, params)
        if not valid:
            raise ParameterValidationError(
                f"Invalid parameters for tool '{name}': {'; '.join(errors)}",
                violations=errors,
                tool_name=name,
            )
        return await call_maybe_async(tool.execute, params, context)


# ── Generic schema checks ────────────────────────────────────────────────────


def _type_matches(ptype: ParameterType, value: Any) -> bool:
    if ptype == ParameterType.STRING:
        return isinstance(value, str)
    if ptype == ParameterType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if ptype == ParameterType.BOOLEAN:
        return isinstance(value, bool)
    if ptype == ParameterType.OBJECT:
        return isinstance(value, dict)
    if ptype == ParameterType.ARRAY:
        return isinstance(value, (list, tuple))
    return True


def _check_parameter(param: ToolParameter, value: Any) -> list[str]:
    if value is None:
        return [f"Parameter '{param.name}' is required"] if param.required else []

    if not _type_matches(param.type, value):
        return [f"Parameter '{param.name}' must be of type {param.type.value}"]

    rules = param.validation
    if rules is None:
        return []

    errors: list[str] = []
    measured = value if param.type == ParameterType.NUMBER else None
    unit = ""
    if isinstance(value, (str, list, tuple)):
        measured, unit = len(value), " (length)"
    if measured is not None:
        if rules.min is not None and measured < rules.min:
            errors.append(f"Parameter '{param.name}' must be >= {rules.min}{unit}")
        if rules.max is not None and measured > rules.max:
            errors.append(f"Parameter '{param.name}' must be <= {rules.max}{unit}")

    if rules.pattern and isinstance(value, str) and not re.fullmatch(rules.pattern, value):
        errors.append(f"Parameter '{param.name}' does not match pattern {rules.pattern}")

    if rules.enum is not None and value not in rules.enum:
        errors.append(f"Parameter '{param.name}' must be one of {rules.enum}")
    return errors
