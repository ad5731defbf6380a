"""
Domain Events - published after a status change has been committed

Collaborators (notification delivery, reporting) subscribe to event types.
Handlers run synchronously on the publishing thread; a failing handler is
logged and does not stop the remaining handlers.
"""
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from .enums import DomainEventType
from .models import UserSnapshot
from ..utils.idgen import generate_event_id
from ..utils.logger import get_logger, get_correlation_id
from ..utils.time import utc_now

logger = get_logger(__name__)


class DomainEvent(BaseModel):
    """Immutable record of something that happened to an application"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    event_id: str = Field(default_factory=generate_event_id)
    event_type: DomainEventType
    application_id: str
    workflow_id: str
    stage_id: str
    stage_name: str
    status_id: str
    previous_stage_id: Optional[str] = None
    transition_id: Optional[str] = None
    notification_triggers: List[str] = Field(default_factory=list)
    actor: Optional[UserSnapshot] = None
    occurred_at: datetime = Field(default_factory=utc_now)
    correlation_id: Optional[str] = Field(default_factory=get_correlation_id)


EventHandler = Callable[[DomainEvent], Any]


class EventDispatcher:
    """In-process publish/subscribe for domain events"""

    def __init__(self):
        self._handlers: Dict[DomainEventType, List[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: DomainEventType, handler: EventHandler) -> None:
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to
            handler: Callable receiving the event
        """
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: DomainEventType, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: DomainEvent) -> int:
        """
        Publish an event to all subscribers.

        Returns:
            Number of handlers that completed without raising
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Error in event handler for {event.event_type.value}: {e}",
                    exc_info=True,
                    extra={
                        "application_id": event.application_id,
                        "stage_id": event.stage_id,
                        "status_id": event.status_id,
                    }
                )
        return delivered

    def clear_handlers(self) -> None:
        """Remove all handlers"""
        with self._lock:
            self._handlers.clear()
