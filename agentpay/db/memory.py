"""In-memory repositories for tests, the CLI, and embedding without a database."""

from __future__ import annotations

import logging
from typing import Optional

from agentpay.exceptions import AgentNotFound
from agentpay.types import AgentDefinition, Mandate, WorkflowGraph, utcnow

logger = logging.getLogger(__name__)


class InMemoryAgentRepository:
    """Dict-backed AgentRepository.  Agents are stored as given; metrics update in place."""

    def __init__(self, agents: Optional[list[AgentDefinition]] = None):
        self._agents: dict[str, AgentDefinition] = {}
        for agent in agents or []:
            self.add(agent)

    def add(self, agent: AgentDefinition) -> AgentDefinition:
        self._agents[agent.id] = agent
        return agent

    async def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        return self._agents.get(agent_id)

    async def load_graph(self, agent_id: str) -> WorkflowGraph:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFound(f"Agent '{agent_id}' not found", agent_id=agent_id)
        return agent.graph

    async def record_metrics(
        self, agent_id: str, success: bool, duration_ms: float, cost: float
    ) -> None:
        """Fold one run into the agent's running totals and averages."""
        agent = self._agents.get(agent_id)
        if agent is None:
            logger.warning("[Repository] Metrics for unknown agent '%s' dropped", agent_id)
            return
        m = agent.metrics
        m.total_executions += 1
        if success:
            m.successful_executions += 1
        else:
            m.failed_executions += 1
        m.average_execution_ms += (duration_ms - m.average_execution_ms) / m.total_executions
        m.last_execution_ms = duration_ms
        m.total_cost += cost
        m.average_cost_per_execution = m.total_cost / m.total_executions
        agent.last_executed_at = utcnow()


class InMemoryMandateRepository:
    """Dict-backed MandateRepository."""

    def __init__(self):
        self._mandates: dict[str, Mandate] = {}

    async def create_mandate(self, mandate: Mandate) -> None:
        self._mandates[mandate.mandate_id] = mandate

    async def update_mandate(self, mandate: Mandate) -> None:
        self._mandates[mandate.mandate_id] = mandate

    async def get_mandate(self, mandate_id: str) -> Optional[Mandate]:
        return self._mandates.get(mandate_id)
