"""Lifecycle event bus and audit logging."""

from agentpay.events.bus import ALL_TOPICS, EventBus
from agentpay.events.logging import AuditLogSubscriber

__all__ = ["EventBus", "AuditLogSubscriber", "ALL_TOPICS"]
