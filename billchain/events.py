"""
billchain Events

Change notifications emitted by the sync layer after a chain is committed or
an inbound payload is refused. Subscribers (UI, notification senders, audit
sinks) register on an `EventBus`; a failing handler never affects the chain
operation that emitted the event.

Usage
─────

    bus = EventBus()

    @bus.subscribe(BlockAppended, ChainReplaced)
    def on_change(event):
        refresh_view(event.bill_id)

    coordinator = SyncCoordinator(..., event_bus=bus)
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

from billchain.observability import Layer, get_logger

logger = get_logger("bus", Layer.EVENTS)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all events.

    Events are facts about something that already happened to a bill.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class BillIssued(Event):
    bill_id: str = ""
    drawer: str = ""
    block_hash: str = ""


@dataclass
class BlockAppended(Event):
    """A block was committed to the local chain (built locally or received)."""
    bill_id: str = ""
    block_number: int = 0
    op_code: str = ""
    block_hash: str = ""
    source: str = "local"


@dataclass
class ChainReplaced(Event):
    """Fork choice replaced the local chain with a peer's chain."""
    bill_id: str = ""
    old_height: int = 0
    new_height: int = 0
    divergence_index: int = 0
    sender: str = ""


@dataclass
class InboundRejected(Event):
    bill_id: str = ""
    sender: str = ""
    reason: str = ""
    error_code: str = ""


@dataclass
class FullChainRequested(Event):
    bill_id: str = ""
    peer: str = ""
    reason: str = ""


@dataclass
class RequestTimedOut(Event):
    bill_id: str = ""
    block_number: int = 0
    op_code: str = ""
    deadline: int = 0


@dataclass
class DivergenceAlarm(Event):
    """Two valid chains tied on every fork-choice criterion."""
    bill_id: str = ""
    sender: str = ""
    local_tip: str = ""
    incoming_tip: str = ""


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


class EventBus:
    """
    In-memory synchronous pub/sub.

    Handlers run in priority order (higher first), outside the bus lock.
    Handler exceptions are counted, logged and passed to `on_error`.
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator to subscribe a handler to event types (all events if none given)."""
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                r for r in self._handlers
                if any(isinstance(event, t) for t in r.event_types)
                and (r.filter_func is None or r.filter_func(event))
            ]

        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            error = EventHandlerError(event, handler, e)
            logger.error(str(error), error_code="EVENT_HANDLER_FAILED", event_type=event.event_type)
            if self._on_error:
                self._on_error(error)

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }
