"""Collaborator interfaces the engine consumes.

Persistence, messaging and transport are owned by the host application.
The engine only depends on these structural protocols; any object with the
right methods satisfies them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable

from agentpay.types import AgentDefinition, Mandate, WorkflowGraph

if TYPE_CHECKING:
    from agentpay.tools.builtin.comms import EmailMessage


@runtime_checkable
class AgentRepository(Protocol):
    async def get_agent(self, agent_id: str) -> Optional[AgentDefinition]: ...

    async def load_graph(self, agent_id: str) -> WorkflowGraph: ...

    async def record_metrics(
        self, agent_id: str, success: bool, duration_ms: float, cost: float
    ) -> None: ...


@runtime_checkable
class MandateRepository(Protocol):
    """Key-value persistence for mandates, keyed by ``mandate_id``."""

    async def create_mandate(self, mandate: Mandate) -> None: ...

    async def update_mandate(self, mandate: Mandate) -> None: ...

    async def get_mandate(self, mandate_id: str) -> Optional[Mandate]: ...


@runtime_checkable
class EventSink(Protocol):
    """Fire-and-forget lifecycle event delivery.  Must never block the caller."""

    def publish(self, topic: str, payload: Any) -> None: ...


@runtime_checkable
class Mailer(Protocol):
    async def send(self, message: "EmailMessage") -> None: ...
