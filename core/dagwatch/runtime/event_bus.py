"""
Session Event Bus - Pub/sub for execution session snapshots.

Presentation code never holds a reference to live session state. It
subscribes here and receives immutable ExecutionSession snapshots:
- after every applied stream event (SESSION_UPDATED)
- on run lifecycle transitions (suspended, resumed, completed, ...)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from dagwatch.runtime.session import ExecutionSession

logger = logging.getLogger(__name__)


class SessionEventType(StrEnum):
    """Types of session events that can be published."""

    SESSION_UPDATED = "session_updated"
    SESSION_RESET = "session_reset"

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_SUSPENDED = "run_suspended"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"


@dataclass
class SessionEvent:
    """A snapshot notification for one conversation."""

    type: SessionEventType
    conversation_id: str
    session: ExecutionSession
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "conversation_id": self.conversation_id,
            "session": self.session.to_dict(),
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
SessionEventHandler = Callable[[SessionEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to session events."""

    id: str
    event_types: set[SessionEventType]
    handler: SessionEventHandler
    filter_conversation: str | None = None  # Only receive events for this conversation


class SessionEventBus:
    """
    Pub/sub bus for session snapshots.

    Example:
        bus = SessionEventBus()

        async def on_update(event: SessionEvent):
            render(event.session)

        bus.subscribe([SessionEventType.SESSION_UPDATED], on_update)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize the bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[SessionEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[SessionEventType],
        handler: SessionEventHandler,
        filter_conversation: str | None = None,
    ) -> str:
        """
        Subscribe to session events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_conversation: Only receive events for this conversation

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_conversation=filter_conversation,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: SessionEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        handlers = [
            sub.handler for sub in self._subscriptions.values() if self._matches(sub, event)
        ]
        if handlers:
            await self._execute_handlers(event, handlers)

    def _matches(self, subscription: Subscription, event: SessionEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if (
            subscription.filter_conversation
            and subscription.filter_conversation != event.conversation_id
        ):
            return False
        return True

    async def _execute_handlers(
        self,
        event: SessionEvent,
        handlers: list[SessionEventHandler],
    ) -> None:
        """Run handlers concurrently. A failing handler never reaches the read loop."""

        async def run_handler(handler: SessionEventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    async def emit(
        self,
        event_type: SessionEventType,
        session: ExecutionSession,
        **data: Any,
    ) -> None:
        """Publish a snapshot of ``session`` under ``event_type``."""
        await self.publish(
            SessionEvent(
                type=event_type,
                conversation_id=session.conversation_id,
                session=session,
                data=data,
            )
        )

    # === QUERY ===

    def get_history(
        self,
        event_type: SessionEventType | None = None,
        conversation_id: str | None = None,
        limit: int = 100,
    ) -> list[SessionEvent]:
        """Most recent events first, optionally filtered."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if conversation_id:
            events = [e for e in events if e.conversation_id == conversation_id]
        return events[:limit]

    def clear_history(self) -> None:
        self._event_history = []
