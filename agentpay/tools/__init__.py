"""Tool registry, plugin decorator, sandbox and executor."""

from agentpay.tools.executor import ToolExecutor
from agentpay.tools.plugin import get_registered_tools, tool
from agentpay.tools.registry import Tool, ToolRegistry
from agentpay.tools.sandbox import Sandbox

__all__ = ["Tool", "ToolRegistry", "ToolExecutor", "Sandbox", "tool", "get_registered_tools"]
