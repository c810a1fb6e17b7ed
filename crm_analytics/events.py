"""
Publish/subscribe bus for ledger and analytics lifecycle events.

Decouples the components that change the ledger (order flow, inventory,
customer profile updates) from the components that derive state from it
(cache invalidation, batch monitoring).

Usage:
    from crm_analytics.events import EventBus, AnalyticsEvent

    bus = EventBus()

    @bus.on(AnalyticsEvent.TRANSACTION_RECORDED)
    async def handle_transaction(data: dict):
        print(f"Customer {data['customer_id']} placed an order")

    await bus.emit(AnalyticsEvent.TRANSACTION_RECORDED, {"customer_id": 42})
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from crm_analytics.models import utcnow
from crm_analytics.observability import get_correlation_id, get_logger

logger = get_logger(__name__)

# Type for event handlers
EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class AnalyticsEvent(Enum):
    """Events consumed or produced by the analytics engine."""

    # Ledger / external collaborators
    TRANSACTION_RECORDED = "ledger.transaction_recorded"
    CUSTOMER_UPDATED = "customer.updated"
    INVENTORY_UPDATED = "inventory.updated"

    # Batch runs
    BATCH_STARTED = "analytics.batch_started"
    BATCH_COMPLETED = "analytics.batch_completed"
    BATCH_FAILED = "analytics.batch_failed"

    # Cache
    CACHE_INVALIDATED = "cache.invalidated"
    CACHE_CLEANED = "cache.cleaned"


@dataclass
class EventMetadata:
    """Metadata attached to every event."""

    event_id: str = field(default_factory=lambda: f"{utcnow().timestamp():.6f}")
    timestamp: datetime = field(default_factory=utcnow)
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)
    source: str = "analytics"


@dataclass
class Event:
    """Event payload plus metadata."""

    type: AnalyticsEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "event_id": self.metadata.event_id,
                "timestamp": self.metadata.timestamp.isoformat(),
                "correlation_id": self.metadata.correlation_id,
                "source": self.metadata.source,
            },
        }


class EventBus:
    """
    Async event bus.

    Features:
    - Multiple async handlers per event, plus wildcard handlers
    - Error isolation (one handler failure doesn't affect others)
    - Bounded event history for debugging
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[AnalyticsEvent, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._history: List[Event] = []
        self._max_history = max_history
        self._lock = asyncio.Lock()

    def on(
        self, event_type: Optional[AnalyticsEvent] = None
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to register an event handler.

        Args:
            event_type: Event type to subscribe to, or None for all events
        """

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(
        self, event_type: Optional[AnalyticsEvent], handler: EventHandler
    ) -> None:
        """Programmatically subscribe to an event (None for all events)."""
        if event_type is None:
            self._wildcard_handlers.append(handler)
            logger.debug(f"Registered wildcard handler: {handler.__name__}")
        else:
            self._handlers.setdefault(event_type, []).append(handler)
            logger.debug(f"Registered handler {handler.__name__} for {event_type.value}")

    def unsubscribe(
        self, event_type: Optional[AnalyticsEvent], handler: EventHandler
    ) -> bool:
        """
        Unsubscribe a handler from an event.

        Returns:
            True if handler was found and removed
        """
        handlers = self._wildcard_handlers if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(
        self,
        event_type: AnalyticsEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "analytics",
    ) -> Event:
        """
        Emit an event to all subscribed handlers.

        Handlers run concurrently; failures are logged, never raised.

        Returns:
            The emitted Event object
        """
        event = Event(
            type=event_type,
            data=data or {},
            metadata=EventMetadata(source=source),
        )

        async with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._wildcard_handlers)

        if not handlers:
            logger.debug(f"No handlers for event {event_type.value}")
            return event

        logger.debug(
            f"Emitting {event_type.value} to {len(handlers)} handlers",
            extra={"event": event.to_dict()},
        )

        results = await asyncio.gather(
            *[handler(event.data) for handler in handlers],
            return_exceptions=True,
        )

        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {handler.__name__} failed for {event_type.value}: {result}",
                    extra={"event": event.to_dict()},
                )

        return event

    def get_history(
        self, event_type: Optional[AnalyticsEvent] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Get recent event history, optionally filtered by type."""
        history = self._history
        if event_type:
            history = [e for e in history if e.type == event_type]
        return [e.to_dict() for e in history[-limit:]]

    def get_handlers(self, event_type: Optional[AnalyticsEvent] = None) -> Dict[str, int]:
        """Get count of registered handlers per event type."""
        if event_type:
            return {event_type.value: len(self._handlers.get(event_type, []))}

        result = {et.value: len(handlers) for et, handlers in self._handlers.items()}
        result["*"] = len(self._wildcard_handlers)
        return result

    def clear_handlers(self) -> None:
        self._handlers.clear()
        self._wildcard_handlers.clear()

    def clear_history(self) -> None:
        self._history.clear()


# ═══════════════════════════════════════════════════════════════════════════════
# CONVENIENCE FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════════════


async def emit_transaction_recorded(bus: EventBus, customer_id: int, product_id: int, **kwargs) -> Event:
    """Emit a ledger write notification for one customer."""
    return await bus.emit(
        AnalyticsEvent.TRANSACTION_RECORDED,
        {"customer_id": customer_id, "product_id": product_id, **kwargs},
        source="ledger",
    )


async def emit_batch_started(bus: EventBus, job: str) -> Event:
    return await bus.emit(
        AnalyticsEvent.BATCH_STARTED,
        {"job": job},
        source="scheduler",
    )


async def emit_batch_completed(bus: EventBus, job: str, summary: Dict[str, Any]) -> Event:
    return await bus.emit(
        AnalyticsEvent.BATCH_COMPLETED,
        {**summary, "job": job},
        source="scheduler",
    )


async def emit_batch_failed(bus: EventBus, job: str, error: str) -> Event:
    return await bus.emit(
        AnalyticsEvent.BATCH_FAILED,
        {"job": job, "error": error},
        source="scheduler",
    )
