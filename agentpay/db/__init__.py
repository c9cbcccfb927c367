"""Collaborator protocols and in-memory implementations."""

from agentpay.db.memory import InMemoryAgentRepository, InMemoryMandateRepository
from agentpay.db.repository import AgentRepository, EventSink, Mailer, MandateRepository

__all__ = [
    "AgentRepository", "MandateRepository", "EventSink", "Mailer",
    "InMemoryAgentRepository", "InMemoryMandateRepository",
]
