"""Built-in tools package. Call register_builtin_tools() to install them in a registry."""

from typing import TYPE_CHECKING, Optional

from agentpay.config import AgentPayConfig
from agentpay.tools.builtin.comms import EmailMessage, LoggingMailer, make_send_email_tool
from agentpay.tools.builtin.http_request import make_http_request_tool
from agentpay.tools.builtin.logic import (
    approval, make_condition_tool, make_wait_tool, manual_trigger,
)
from agentpay.tools.plugin import register_decorated_tools
from agentpay.tools.registry import ToolRegistry
from agentpay.workflows.expressions import ExpressionEvaluator

if TYPE_CHECKING:
    from agentpay.db.repository import Mailer

BUILTIN_TOOL_NAMES = [
    "http_request", "send_email", "condition", "wait", "manual_trigger", "approval",
]


def register_builtin_tools(
    registry: ToolRegistry,
    mailer: Optional["Mailer"] = None,
    evaluator: Optional[ExpressionEvaluator] = None,
    config: Optional[AgentPayConfig] = None,
) -> ToolRegistry:
    """Install every built-in tool into ``registry`` and return it."""
    config = config or AgentPayConfig()
    registry.register(make_http_request_tool(config))
    registry.register(make_send_email_tool(mailer))
    registry.register(make_condition_tool(evaluator))
    registry.register(make_wait_tool(config))
    register_decorated_tools(registry, names=[manual_trigger.__name__, approval.__name__])
    return registry


__all__ = [
    "register_builtin_tools", "BUILTIN_TOOL_NAMES",
    "EmailMessage", "LoggingMailer",
]
