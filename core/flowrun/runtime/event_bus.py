"""
Event Bus - Lifecycle notifications for flows, executions and nodes.

The engine and the FlowManager announce what happens; integrations listen:

    bus = EventBus()

    async def notify(event: FlowEvent) -> None:
        await webhook.post(event.to_dict())

    bus.subscribe([EventType.EXECUTION_FAILED], notify, filter_flow=flow.id)

Delivery is fire-and-forget from the publisher's point of view. A handler
that raises is logged and skipped; the run that published carries on.
"""

import asyncio
import itertools
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from flowrun.graph.flow import utcnow

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Everything the engine and the definition API announce."""

    # Flow lifecycle
    FLOW_ACTIVATED = "flow_activated"
    FLOW_DEACTIVATED = "flow_deactivated"

    # Execution lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_WAITING = "execution_waiting"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"
    EXECUTION_CANCELLED = "execution_cancelled"

    # Per-node
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"

    CUSTOM = "custom"


@dataclass
class FlowEvent:
    type: EventType
    flow_id: str | None = None
    execution_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form for webhooks and log sinks."""
        payload: dict[str, Any] = {"type": self.type.value}
        payload.update(
            flow_id=self.flow_id,
            execution_id=self.execution_id,
            node_id=self.node_id,
            data=self.data,
            timestamp=self.timestamp.isoformat(),
        )
        return payload


EventHandler = Callable[[FlowEvent], Awaitable[None]]

# Subscription filter name -> FlowEvent attribute it constrains
_FILTER_FIELDS = {
    "filter_flow": "flow_id",
    "filter_execution": "execution_id",
    "filter_node": "node_id",
}


@dataclass
class Subscription:
    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    filters: dict[str, str] = field(default_factory=dict)  # FlowEvent attribute -> value

    def accepts(self, event: FlowEvent) -> bool:
        if event.type not in self.event_types:
            return False
        return all(getattr(event, attr) == value for attr, value in self.filters.items())


class EventBus:
    """
    Async pub/sub with per-subscription filters and a bounded history.

    Handlers of one event run concurrently, at most ``max_concurrent_handlers``
    at a time across the bus. The history keeps the newest ``max_history``
    events for debugging and for ``get_history``/``get_stats``.
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[FlowEvent] = deque(maxlen=max_history)
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)
        self._ids = itertools.count(1)

    # === SUBSCRIPTIONS ===

    def subscribe(
        self,
        event_types: Iterable[EventType],
        handler: EventHandler,
        filter_flow: str | None = None,
        filter_node: str | None = None,
        filter_execution: str | None = None,
    ) -> str:
        """Register ``handler`` and return the id to pass to ``unsubscribe``."""
        given = {
            "filter_flow": filter_flow,
            "filter_node": filter_node,
            "filter_execution": filter_execution,
        }
        subscription = Subscription(
            id=f"sub_{next(self._ids)}",
            event_types=frozenset(event_types),
            handler=handler,
            filters={_FILTER_FIELDS[name]: value for name, value in given.items() if value},
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug(
            f"{subscription.id} listening for {sorted(subscription.event_types)} "
            f"where {subscription.filters or 'any'}"
        )
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = self._subscriptions.pop(subscription_id, None)
        if removed is None:
            return False
        logger.debug(f"{subscription_id} unsubscribed")
        return True

    # === PUBLISHING ===

    async def publish(self, event: FlowEvent) -> None:
        self._history.append(event)
        targets = [s for s in list(self._subscriptions.values()) if s.accepts(event)]
        if not targets:
            return
        await asyncio.gather(*(self._deliver(s, event) for s in targets))

    async def _deliver(self, subscription: Subscription, event: FlowEvent) -> None:
        async with self._handler_slots:
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(f"Subscriber {subscription.id} failed on {event.type.value}: {e}")

    async def emit_flow_activated(self, flow_id: str, version: int) -> None:
        await self.publish(
            FlowEvent(EventType.FLOW_ACTIVATED, flow_id=flow_id, data={"version": version})
        )

    async def emit_flow_deactivated(self, flow_id: str) -> None:
        await self.publish(FlowEvent(EventType.FLOW_DEACTIVATED, flow_id=flow_id))

    async def emit_execution(
        self,
        event_type: EventType,
        flow_id: str,
        execution_id: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self.publish(FlowEvent(event_type, flow_id, execution_id, data=data or {}))

    async def emit_node(
        self,
        event_type: EventType,
        flow_id: str,
        execution_id: str,
        node_id: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self.publish(FlowEvent(event_type, flow_id, execution_id, node_id, data or {}))

    # === INTROSPECTION ===

    def get_history(
        self,
        event_type: EventType | None = None,
        flow_id: str | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[FlowEvent]:
        """Newest-first slice of the history, narrowed by the given fields."""
        wanted = {"type": event_type, "flow_id": flow_id, "execution_id": execution_id}
        wanted = {attr: value for attr, value in wanted.items() if value}
        matches = (
            event
            for event in reversed(self._history)
            if all(getattr(event, attr) == value for attr, value in wanted.items())
        )
        return list(itertools.islice(matches, limit))

    def get_stats(self) -> dict[str, Any]:
        counts = Counter(event.type.value for event in self._history)
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(counts),
        }

    async def wait_for(
        self,
        event_type: EventType,
        flow_id: str | None = None,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> FlowEvent | None:
        """
        Block until a matching event is published.

        Returns None when ``timeout`` seconds pass first. The temporary
        subscription is always removed.
        """
        arrived: asyncio.Future[FlowEvent] = asyncio.get_running_loop().create_future()

        async def capture(event: FlowEvent) -> None:
            if not arrived.done():
                arrived.set_result(event)

        sub_id = self.subscribe(
            [event_type], capture, filter_flow=flow_id, filter_execution=execution_id
        )
        try:
            return await asyncio.wait_for(arrived, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
