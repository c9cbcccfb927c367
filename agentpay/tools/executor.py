"""Orchestrates: lookup → defaults → validate → sandbox execute → capture result.

The last stop before a tool actually runs.
"""

import logging
from typing import Any, Optional, Tuple

from agentpay.exceptions import ParameterValidationError, ToolError, ToolNotFoundError
from agentpay.tools.registry import ToolRegistry
from agentpay.tools.sandbox import Sandbox
from agentpay.types import ExecutionContext

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Orchestrates tool execution pipeline."""

    def __init__(self, registry: ToolRegistry, sandbox: Optional[Sandbox] = None):
        self.registry = registry
        self.sandbox = sandbox or Sandbox()

    async def execute(
        self,
        tool_name: str,
        params: dict,
        context: ExecutionContext,
        timeout_ms: float,
        step_id: str = "",
    ) -> Tuple[Any, Optional[ToolError]]:
        """Execute a tool call with full validation.

        Steps:
        1. Get tool from registry
        2. Fill schema defaults and validate parameters
        3. Execute in sandbox, raced against ``timeout_ms``
        4. Return (result, error_or_None)

        Returns:
            Tuple of (result, error). error is None on success.

        Raises:
            ToolNotFoundError: misconfigured tool type; the caller aborts the run
        """
        # Step 1: Resolve tool from registry
        try:
            tool = self.registry.require(tool_name)
        except ToolNotFoundError:
            logger.error("[Executor] Tool '%s' not found for step '%s'", tool_name, step_id)
            raise

        # Step 2: Defaults + schema validation
        params = self.registry.apply_defaults(tool_name, params)
        valid, violations = self.registry.validate_parameters(tool_name, params)
        if not valid:
            logger.warning("[Executor] Invalid parameters for '%s': %s", tool_name, violations)
            return None, ParameterValidationError(
                f"Invalid parameters for tool '{tool_name}': {'; '.join(violations)}",
                violations=violations,
                tool_name=tool_name,
            )

        # Step 3: Execute inside sandbox
        try:
            result = await self.sandbox.run(
                tool.execute, params, context, timeout_ms,
                tool_name=tool_name, step_id=step_id,
            )
            return result, None
        except ToolError as te:
            # Surface the tool's own error message (e.g. "HTTP 503", "invalid address")
            logger.warning("[Executor] ToolError for '%s': %s", tool_name, te)
            return None, te
