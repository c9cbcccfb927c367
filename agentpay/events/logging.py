"""Structured JSON audit logging for engine lifecycle events."""

import json
import logging
from typing import Any, Optional

from agentpay.config import AgentPayConfig
from agentpay.events.bus import EventBus

logger = logging.getLogger("agentpay.audit")

_ERROR_TOPICS = {"execution:failed", "step:failed"}


def _clip(value: Any) -> Any:
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {k: _clip(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_clip(v) for v in value[:20]]
    return str(value)[:200]


class AuditLogSubscriber:
    """Emits one structured JSON log line per published event.

    Each log line is a self-contained JSON object with:
      - event: topic name
      - ts: the payload's timestamp
      - execution_id / agent_id / tenant_id when present
      - data: topic-specific fields, long strings clipped

    Log level: INFO for normal events, ERROR for failures.
    Logger name: agentpay.audit (configure in your logging setup)

    The instance is a plain sync callable, so the bus invokes it inline::

        AuditLogSubscriber().attach(bus)
    """

    def __init__(self, topics: Optional[list[str]] = None, config: Optional[AgentPayConfig] = None):
        cfg = config or AgentPayConfig()
        self.topics = list(topics if topics is not None else cfg.event_topics_logged)

    def attach(self, bus: EventBus) -> "AuditLogSubscriber":
        for topic in self.topics:
            bus.subscribe(topic, self)
        return self

    def detach(self, bus: EventBus) -> None:
        for topic in self.topics:
            bus.unsubscribe(topic, self)

    def __call__(self, topic: str, payload: Optional[dict]) -> None:
        payload = payload or {}
        line = {
            "event": topic,
            "ts": payload.get("timestamp"),
            **{k: payload[k] for k in ("execution_id", "agent_id", "tenant_id") if k in payload},
            "data": _clip(payload.get("data", {})),
        }
        level = logging.ERROR if topic in _ERROR_TOPICS else logging.INFO
        logger.log(level, json.dumps(line, default=str))

