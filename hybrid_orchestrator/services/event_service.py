"""
Lifecycle event delivery.

The orchestrator and the vault emit events to an EventSink; transport layers
(WebSocket relays, webhooks) subscribe to relay them to clients. Emission is
fire-and-forget: ``emit`` must not block, and the orchestrator logs and counts
any exception a sink raises instead of letting it interrupt a job.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..models.job import utcnow
from ..utils.logger import get_logger


class EventType(Enum):
    """Event types emitted to sinks."""
    STARTED = "started"
    MODEL_RESULT = "model_result"
    MODEL_ERROR = "model_error"
    SYNTHESIS_ERROR = "synthesis_error"
    COMPLETED = "completed"
    FAILED = "failed"
    TOKEN_REFRESHED = "token_refreshed"
    REAUTH_REQUIRED = "reauth_required"


@dataclass
class Event:
    """One emitted event."""
    job_id: Optional[str]
    event_type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "type": self.event_type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class EventSink(ABC):
    """Receiver of lifecycle events."""

    @abstractmethod
    def emit(self, job_id: Optional[str], event_type: EventType, payload: Dict[str, Any]) -> None:
        """Deliver one event; must return without blocking."""
        pass


class NullEventSink(EventSink):
    """Discards every event."""

    def emit(self, job_id: Optional[str], event_type: EventType, payload: Dict[str, Any]) -> None:
        return None


class InMemoryEventSink(EventSink):
    """
    Records events and fans them out to subscriber queues.

    Transport layers call ``subscribe()`` and drain the returned queue;
    tests inspect ``events`` directly.
    """

    def __init__(self, max_events: int = 10000):
        self.max_events = max_events
        self.events: List[Event] = []
        self._subscribers: List[asyncio.Queue] = []

    def emit(self, job_id: Optional[str], event_type: EventType, payload: Dict[str, Any]) -> None:
        event = Event(job_id=job_id, event_type=event_type, payload=dict(payload))
        self.events.append(event)
        if len(self.events) > self.max_events:
            self.events.pop(0)
        for queue in self._subscribers:
            queue.put_nowait(event)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def events_for(self, job_id: str, event_type: Optional[EventType] = None) -> List[Event]:
        return [
            event for event in self.events
            if event.job_id == job_id and (event_type is None or event.event_type == event_type)
        ]

    def types_for(self, job_id: str) -> List[EventType]:
        return [event.event_type for event in self.events_for(job_id)]


class LoggingEventSink(EventSink):
    """Writes every event to the structured log."""

    def __init__(self):
        self.logger = get_logger(__name__)

    def emit(self, job_id: Optional[str], event_type: EventType, payload: Dict[str, Any]) -> None:
        self.logger.info(f"Event {event_type.value}", extra={
            "event_job_id": job_id,
            "event_type": event_type.value,
            "payload": payload
        })


class CompositeEventSink(EventSink):
    """Delivers each event to several sinks; one failing sink does not starve the rest."""

    def __init__(self, sinks: List[EventSink]):
        self.sinks = list(sinks)
        self.logger = get_logger(__name__)

    def emit(self, job_id: Optional[str], event_type: EventType, payload: Dict[str, Any]) -> None:
        failures = []
        for sink in self.sinks:
            try:
                sink.emit(job_id, event_type, payload)
            except Exception as e:
                self.logger.warning(f"Event sink {sink.__class__.__name__} failed: {str(e)}")
                failures.append(e)
        if failures:
            raise failures[0]
