"""
Event System Module

Publish/subscribe dispatcher used as the notification channel. Events are
published only after the unit of work that produced them has committed;
a failing subscriber is logged and never undoes the committed mutation.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock

from .audit import AuditAction, AuditRecorder
from .logging_config import get_logger


class DomainEvent(Enum):
    """Domain events that can occur in the banking core"""

    # Account events
    ACCOUNT_OPENED = "account.opened"
    ACCOUNT_STATUS_CHANGED = "account.status_changed"

    # Ledger events
    DEPOSIT_POSTED = "ledger.deposit"
    WITHDRAWAL_POSTED = "ledger.withdrawal"
    TRANSFER_COMPLETED = "transfer.completed"

    # Loan events
    LOAN_APPLIED = "loan.applied"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_PAYMENT = "loan.payment"
    LOAN_CLOSED = "loan.closed"

    # Credit card application events
    APPLICATION_SUBMITTED = "card_application.submitted"
    APPLICATION_APPROVED = "card_application.approved"
    APPLICATION_REJECTED = "card_application.rejected"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = get_logger("bankcore.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(
                    f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}"
                )

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}"
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


class PostCommitMixin:
    """
    Notification and audit hooks for components that mutate the store.

    Both hooks run after commit. Failures are logged and swallowed because
    the financial mutation is already durable at that point.
    """

    event_dispatcher: Optional[EventDispatcher] = None
    audit: Optional[AuditRecorder] = None
    logger: logging.Logger

    def _publish_event(self, event_type: DomainEvent, entity_type: str, entity_id: str,
                       data: Dict[str, Any]) -> None:
        if self.event_dispatcher is None:
            return
        try:
            self.event_dispatcher.publish(EventPayload(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                data=data
            ))
        except Exception as e:
            self.logger.error(f"Failed to publish {event_type.value} for {entity_type}:{entity_id}: {e}")

    def _record_audit(self, entity_type: str, entity_id: str, action: AuditAction,
                      actor_id: Optional[str] = None, before: Optional[Dict[str, Any]] = None,
                      after: Optional[Dict[str, Any]] = None) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(entity_type, entity_id, action, actor_id=actor_id, before=before, after=after)
        except Exception as e:
            self.logger.error(f"Failed to record audit {action.value} for {entity_type}:{entity_id}: {e}")
