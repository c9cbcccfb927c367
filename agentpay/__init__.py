"""AgentPay: mandate-gated workflow execution for autonomous agents.

Usage:
    from agentpay import AgentOrchestrator, MandateChain, ToolRegistry
    from agentpay.db import InMemoryAgentRepository
    from agentpay.tools.builtin import register_builtin_tools

    chain = MandateChain()
    orchestrator = AgentOrchestrator(
        InMemoryAgentRepository([agent]),
        register_builtin_tools(ToolRegistry()),
        mandate_chain=chain,
    )
    result = await orchestrator.execute(agent.id, variables={"amount": 42})
"""

from agentpay.types import (
    AgentDefinition, WorkflowGraph, WorkflowStep, ExecutionContext, ExecutionResult,
    StepResult, Mandate, MandateContent, ToolDefinition, ToolParameter,
    StepType, ErrorStrategy, StepStatus, ExecutionStatus, AgentStatus,
    MandateType, MandateStatus,
)
from agentpay.exceptions import (
    AgentPayError, WorkflowValidationError, AgentNotFound, AgentNotExecutable,
    ToolError, ToolNotFoundError, StepTimeoutError, MandateError, MandateGateError,
    MandateStateError, MandateIntegrityError, MandateConflictError,
)
from agentpay.core import AgentOrchestrator, MandateChain, MandateSigner, MandateVerifier
from agentpay.events import EventBus
from agentpay.tools import ToolRegistry, tool
from agentpay.version import __version__

__all__ = [
    "AgentDefinition", "WorkflowGraph", "WorkflowStep", "ExecutionContext", "ExecutionResult",
    "StepResult", "Mandate", "MandateContent", "ToolDefinition", "ToolParameter",
    "StepType", "ErrorStrategy", "StepStatus", "ExecutionStatus", "AgentStatus",
    "MandateType", "MandateStatus",
    "AgentPayError", "WorkflowValidationError", "AgentNotFound", "AgentNotExecutable",
    "ToolError", "ToolNotFoundError", "StepTimeoutError", "MandateError", "MandateGateError",
    "MandateStateError", "MandateIntegrityError", "MandateConflictError",
    "AgentOrchestrator", "MandateChain", "MandateSigner", "MandateVerifier",
    "EventBus", "ToolRegistry", "tool",
    "__version__",
]
