"""Constrained execution environment for tool calls.

Timeout race + error wrapping.  Tools are plain callables with no
cancellation contract, so a timed-out call is abandoned rather than
interrupted: its task is cancelled but never awaited, and the engine moves on.
"""

import asyncio
import functools
import inspect
import logging
import time
from typing import Any, Callable

from agentpay.exceptions import StepTimeoutError, ToolError
from agentpay.types import ExecutionContext

logger = logging.getLogger(__name__)


def _consume_outcome(task: "asyncio.Future[Any]") -> None:
    # Late failures of abandoned calls must not surface as "never retrieved".
    if not task.cancelled() and task.exception() is not None:
        logger.debug("[Sandbox] Abandoned tool call finished with: %s", task.exception())


async def _invoke(fn: Callable[..., Any], params: dict, context: ExecutionContext) -> Any:
    if inspect.iscoroutinefunction(fn):
        return await fn(params, context)
    # Sync function: run in thread executor to avoid blocking the loop
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, functools.partial(fn, params, context))
    if inspect.isawaitable(result):
        result = await result
    return result


class Sandbox:
    """Constrained execution environment for tool calls."""

    async def run(
        self,
        fn: Callable[..., Any],
        params: dict,
        context: ExecutionContext,
        timeout_ms: float,
        tool_name: str = "",
        step_id: str = "",
    ) -> Any:
        """Execute ``fn(params, context)`` raced against a timer.

        Args:
            fn: Tool callable, sync or async
            params: Resolved, validated parameters
            context: Execution context handed to the tool
            timeout_ms: Race deadline in milliseconds
            tool_name: For error messages
            step_id: For error messages

        Returns:
            Tool result

        Raises:
            StepTimeoutError: the timer won the race
            ToolError: the tool raised (non-ToolError exceptions are wrapped)
        """
        name = tool_name or getattr(fn, "__name__", "unknown")
        task = asyncio.ensure_future(_invoke(fn, params, context))
        task.add_done_callback(_consume_outcome)
        start = time.monotonic()

        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        if task not in done:
            task.cancel()
            logger.warning(
                "[Sandbox] Step '%s' (%s) timed out after %sms", step_id, name, timeout_ms
            )
            raise StepTimeoutError(
                f"Step '{step_id}' timed out after {timeout_ms}ms",
                timeout_ms=timeout_ms,
                step_id=step_id,
                tool_name=name,
            )

        logger.debug("[Sandbox] %s finished in %.1fms", name, (time.monotonic() - start) * 1000)
        try:
            return task.result()
        except ToolError:
            raise
        except asyncio.CancelledError as exc:
            raise ToolError(f"Tool '{name}' was cancelled", tool_name=name) from exc
        except Exception as exc:
            raise ToolError(str(exc) or type(exc).__name__, tool_name=name) from exc
