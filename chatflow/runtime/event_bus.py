"""
Event Bus - Pub/sub for session lifecycle events.

Lets the surrounding application (inbox UI, analytics, webhooks) observe
sessions without the engine knowing about them:
- Publish events as sessions are created, advanced, suspended and ended
- Subscribe with optional session/conversation/flow filters

Emission never blocks traversal: ``emit`` hands the event to a background
task, and handler failures are logged and swallowed. Delivery is
at-most-once; nothing is retried.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    SESSION_CREATED = "session_created"
    SESSION_UPDATED = "session_updated"
    SESSION_WAITING = "session_waiting"
    SESSION_COMPLETED = "session_completed"
    SESSION_EXPIRED = "session_expired"
    SESSION_FAILED = "session_failed"


@dataclass
class SessionEvent:
    """A session lifecycle event."""

    type: EventType
    session_id: str
    flow_id: Any = None
    conversation_id: Any = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "flow_id": self.flow_id,
            "conversation_id": self.conversation_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[SessionEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_session: str | None = None  # Only events of this session
    filter_conversation: Any = None  # Only events of this conversation
    filter_flow: Any = None  # Only events of this flow


class EventBus:
    """
    Pub/sub event bus for session lifecycle events.

    Example:
        bus = EventBus()

        async def on_waiting(event: SessionEvent):
            print(f"Session {event.session_id} waits at {event.node_id}")

        bus.subscribe(event_types=[EventType.SESSION_WAITING], handler=on_waiting)

        bus.emit_session_waiting(session_id="session_...", node_id="menu")
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[SessionEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._pending: set[asyncio.Task] = set()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_session: str | None = None,
        filter_conversation: Any = None,
        filter_flow: Any = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_session: Only receive events from this session
            filter_conversation: Only receive events from this conversation
            filter_flow: Only receive events from this flow

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_session=filter_session,
            filter_conversation=filter_conversation,
            filter_flow=filter_flow,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription; True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    def emit(self, event: SessionEvent) -> None:
        """
        Publish an event without waiting for handlers.

        Outside a running event loop the event is only recorded in history.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._record(event)
            return

        task = loop.create_task(self.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def publish(self, event: SessionEvent) -> None:
        """Publish an event to all matching subscribers and wait for them."""
        self._record(event)

        matching_handlers = [
            s.handler for s in list(self._subscriptions.values()) if self._matches(s, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    async def drain(self) -> None:
        """Wait until every event emitted so far has been delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _record(self, event: SessionEvent) -> None:
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

    def _matches(self, subscription: Subscription, event: SessionEvent) -> bool:
        """Check if a subscription matches an event."""
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_session and subscription.filter_session != event.session_id:
            return False
        if (
            subscription.filter_conversation is not None
            and subscription.filter_conversation != event.conversation_id
        ):
            return False
        if subscription.filter_flow is not None and subscription.filter_flow != event.flow_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: SessionEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    def emit_session_created(
        self,
        session_id: str,
        flow_id: Any = None,
        conversation_id: Any = None,
        trigger_node_id: str | None = None,
    ) -> None:
        """Emit session created event."""
        self.emit(
            SessionEvent(
                type=EventType.SESSION_CREATED,
                session_id=session_id,
                flow_id=flow_id,
                conversation_id=conversation_id,
                node_id=trigger_node_id,
            )
        )

    def emit_session_updated(
        self,
        session_id: str,
        flow_id: Any = None,
        conversation_id: Any = None,
        changes: list[str] | None = None,
        status: str | None = None,
    ) -> None:
        """Emit session updated event."""
        self.emit(
            SessionEvent(
                type=EventType.SESSION_UPDATED,
                session_id=session_id,
                flow_id=flow_id,
                conversation_id=conversation_id,
                data={"changes": changes or [], "status": status},
            )
        )

    def emit_session_waiting(
        self,
        session_id: str,
        node_id: str,
        flow_id: Any = None,
        conversation_id: Any = None,
        expected_input_type: str | None = None,
    ) -> None:
        """Emit session waiting event."""
        self.emit(
            SessionEvent(
                type=EventType.SESSION_WAITING,
                session_id=session_id,
                flow_id=flow_id,
                conversation_id=conversation_id,
                node_id=node_id,
                data={"expected_input_type": expected_input_type},
            )
        )

    def emit_session_completed(
        self,
        session_id: str,
        flow_id: Any = None,
        conversation_id: Any = None,
        execution_path: list[str] | None = None,
    ) -> None:
        """Emit session completed event."""
        self.emit(
            SessionEvent(
                type=EventType.SESSION_COMPLETED,
                session_id=session_id,
                flow_id=flow_id,
                conversation_id=conversation_id,
                data={"execution_path": execution_path or []},
            )
        )

    def emit_session_expired(
        self,
        session_id: str,
        flow_id: Any = None,
        conversation_id: Any = None,
    ) -> None:
        """Emit session expired event."""
        self.emit(
            SessionEvent(
                type=EventType.SESSION_EXPIRED,
                session_id=session_id,
                flow_id=flow_id,
                conversation_id=conversation_id,
            )
        )

    def emit_session_failed(
        self,
        session_id: str,
        error: str,
        node_id: str | None = None,
        flow_id: Any = None,
        conversation_id: Any = None,
    ) -> None:
        """Emit session failed event."""
        self.emit(
            SessionEvent(
                type=EventType.SESSION_FAILED,
                session_id=session_id,
                flow_id=flow_id,
                conversation_id=conversation_id,
                node_id=node_id,
                data={"error": error},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        session_id: str | None = None,
        conversation_id: Any = None,
        limit: int = 100,
    ) -> list[SessionEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if session_id:
            events = [e for e in events if e.session_id == session_id]
        if conversation_id is not None:
            events = [e for e in events if e.conversation_id == conversation_id]

        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "pending_deliveries": len(self._pending),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        session_id: str | None = None,
        conversation_id: Any = None,
        timeout: float | None = None,
    ) -> SessionEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: SessionEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: SessionEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_session=session_id,
            filter_conversation=conversation_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)
