"""In-process pub/sub event bus for engine lifecycle events.

Subscribers are plain callables (sync or async) taking ``(topic, payload)``.
``publish`` never blocks the caller: sync subscribers run inline, async
ones are scheduled as tasks.  The bus snapshots the subscriber list before
iterating so that callbacks added during publish don't cause mutation issues.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

# ── Well-known topics ──────────────────────────────────────────────────────
EXECUTION_STARTED     = "execution:started"
EXECUTION_COMPLETED   = "execution:completed"
EXECUTION_FAILED      = "execution:failed"
EXECUTION_CANCELLED   = "execution:cancelled"
EXECUTION_ROLLEDBACK  = "execution:rolledback"
STEP_STARTED          = "step:started"
STEP_COMPLETED        = "step:completed"
STEP_FAILED           = "step:failed"
MANDATE_CREATED       = "mandate:created"
MANDATE_APPROVED      = "mandate:approved"
MANDATE_EXECUTED      = "mandate:executed"

ALL_TOPICS = [
    EXECUTION_STARTED, STEP_STARTED, STEP_COMPLETED, STEP_FAILED,
    EXECUTION_COMPLETED, EXECUTION_FAILED, EXECUTION_CANCELLED, EXECUTION_ROLLEDBACK,
    MANDATE_CREATED, MANDATE_APPROVED, MANDATE_EXECUTED,
]

WILDCARD = "*"


class EventBus:
    """Lightweight, in-process pub/sub bus.

    Usage::

        bus = EventBus()
        bus.subscribe("execution:completed", my_handler)
        bus.subscribe("*", audit_everything)
        bus.publish("execution:completed", {"execution_id": "..."})
        await bus.drain()
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = {}
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, topic: str, callback: Callable) -> None:
        """Register *callback* for *topic* (``"*"`` for every topic)."""
        self._subscribers.setdefault(topic, []).append(callback)

    def unsubscribe(self, topic: str, callback: Callable) -> None:
        """Remove the first occurrence of *callback* from *topic*.  Silently ignores missing."""
        callbacks = self._subscribers.get(topic, [])
        try:
            callbacks.remove(callback)
        except ValueError:
            pass

    def publish(self, topic: str, payload: Any = None) -> None:
        """Deliver *payload* to subscribers of *topic* and of ``"*"``.

        Exceptions raised by individual subscribers are logged and swallowed so
        that one failing handler cannot block the rest, or the engine.
        """
        # Snapshot prevents mutation bugs if a callback subscribes/unsubscribes
        callbacks = list(self._subscribers.get(topic, []))
        if topic != WILDCARD:
            callbacks += self._subscribers.get(WILDCARD, [])
        for cb in callbacks:
            try:
                result = cb(topic, payload)
            except Exception:
                logger.exception("[EventBus] Subscriber raised for topic=%r", topic)
                continue
            if inspect.isawaitable(result):
                self._schedule(topic, result)

    def _schedule(self, topic: str, awaitable: Any) -> None:
        try:
            task = asyncio.ensure_future(awaitable, loop=asyncio.get_running_loop())
        except RuntimeError:
            logger.warning("[EventBus] No running loop; dropped async delivery of %r", topic)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_done(topic, t))

    def _on_done(self, topic: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "[EventBus] Async subscriber raised for topic=%r: %s", topic, task.exception()
            )

    async def drain(self) -> None:
        """Wait until every scheduled async delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
