"""Test fixtures: config, registries, graph builders, in-memory collaborators.

All tests should use these fixtures for consistency.
"""

import pytest

from agentpay.config import AgentPayConfig
from agentpay.core.mandates import MandateChain
from agentpay.core.orchestrator import AgentOrchestrator
from agentpay.db.memory import InMemoryAgentRepository
from agentpay.events.bus import EventBus
from agentpay.tools.builtin import register_builtin_tools
from agentpay.tools.registry import Tool, ToolRegistry
from agentpay.types import (
    AgentDefinition, AgentStatus, ErrorHandling, ErrorStrategy, MandateContent,
    StepConnections, StepType, ToolDefinition, WorkflowGraph, WorkflowStep,
)


# ── Builders ───────────────────────────────────────────────────────────────────


def make_step(
    step_id: str,
    type: StepType = StepType.ACTION,
    tool_type: str = "echo",
    next_id: str = None,
    failure_id: str = None,
    conditions: list = None,
    strategy: ErrorStrategy = ErrorStrategy.STOP,
    max_retries: int = 3,
    fallback_id: str = None,
    **kwargs,
) -> WorkflowStep:
    """Compact WorkflowStep constructor used throughout the suite."""
    if type == StepType.TRIGGER and tool_type == "echo":
        tool_type = "manual_trigger"
    return WorkflowStep(
        id=step_id,
        type=type,
        name=kwargs.pop("name", step_id.replace("_", " ").title()),
        tool_type=tool_type,
        connections=StepConnections(
            success_step_id=next_id,
            failure_step_id=failure_id,
            conditions=[
                {"expression": expr, "next_step_id": target} for expr, target in (conditions or [])
            ],
        ),
        error_handling=ErrorHandling(
            strategy=strategy, max_retries=max_retries, fallback_step_id=fallback_id
        ),
        **kwargs,
    )


def make_graph(*steps: WorkflowStep, agent_id: str = "agent-1", variables: dict = None) -> WorkflowGraph:
    return WorkflowGraph(agent_id=agent_id, steps=list(steps), variables=variables or {})


def make_agent(graph: WorkflowGraph, status: AgentStatus = AgentStatus.ACTIVE, **kwargs) -> AgentDefinition:
    return AgentDefinition(
        id=graph.agent_id,
        tenant_id=kwargs.pop("tenant_id", "tenant-1"),
        created_by=kwargs.pop("created_by", "user-1"),
        name=kwargs.pop("name", "Test Agent"),
        status=status,
        graph=graph,
        **kwargs,
    )


def simple_tool(name: str, execute, rollback=None, parameters=None) -> Tool:
    """Register-ready Tool around a plain callable ``(params, context)``."""
    return Tool(
        definition=ToolDefinition(name=name, description=f"test tool {name}", parameters=parameters or []),
        execute=execute,
        rollback=rollback,
    )


def payment_content(amount: float = 100.0, requires_approval: bool = False) -> MandateContent:
    return MandateContent.model_validate({
        "intent": {"action": "Pay", "description": "Pay the invoice"},
        "transaction": {
            "amount": {"value": amount, "currency": "usd"},
            "recipient": {"name": "ACME Corp"},
        },
        "authorization": {"requires_approval": requires_approval},
    })


class RecordingSink:
    """EventSink that keeps every (topic, payload) pair."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def publish(self, topic, payload):
        self.events.append((topic, payload))

    def topics(self) -> list[str]:
        return [t for t, _ in self.events]


# ── Fixtures ───────────────────────────────────────────────────────────────────


@pytest.fixture
def config():
    """Test configuration with safe defaults."""
    return AgentPayConfig(debug=True, log_level="DEBUG")


@pytest.fixture
def calls():
    """Ordered record of tool invocations: (tool_name, params)."""
    return []


@pytest.fixture
def registry(calls):
    """Built-in tools plus ``echo`` (returns its params) and ``boom`` (always raises)."""
    reg = register_builtin_tools(ToolRegistry())

    async def echo(params, context):
        calls.append(("echo", dict(params)))
        return dict(params)

    async def boom(params, context):
        calls.append(("boom", dict(params)))
        raise RuntimeError("boom failed")

    reg.register(simple_tool("echo", echo))
    reg.register(simple_tool("boom", boom))
    return reg


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def mandate_chain(sink):
    return MandateChain(event_sink=sink)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def run_agent(registry, mandate_chain, sink):
    """Build an orchestrator around one graph and execute it.

    Returns ``(result, orchestrator, repository)``.
    """
    async def _run(graph: WorkflowGraph, variables: dict = None, agent: AgentDefinition = None, **kwargs):
        agent = agent or make_agent(graph)
        repo = InMemoryAgentRepository([agent])
        orchestrator = AgentOrchestrator(
            repo, registry, mandate_chain=mandate_chain, event_sink=sink, **kwargs
        )
        result = await orchestrator.execute(agent.id, variables=variables)
        return result, orchestrator, repo

    return _run
