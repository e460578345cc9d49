"""
Audit Trail Module

The AuditRecorder contract receives entity id, action, before/after values
and the acting principal after every successful mutation. AuditTrail is a
hash-chained implementation backed by the store: each event carries the
SHA-256 of its predecessor, so any edit or deletion breaks the chain.
"""

import hashlib
import json
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord, _to_storable, parse_datetime


class AuditAction(Enum):
    """Kinds of audited mutations"""
    # Customer events
    CUSTOMER_REGISTERED = "customer_registered"

    # Account events
    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_STATUS_CHANGED = "account_status_changed"

    # Ledger events
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_COMPLETED = "transfer_completed"

    # Loan events
    LOAN_APPLIED = "loan_applied"
    LOAN_PAYMENT = "loan_payment"
    LOAN_CLOSED = "loan_closed"
    INSTALLMENTS_OVERDUE = "installments_overdue"

    # Approval events
    APPROVED = "approved"
    REJECTED = "rejected"

    # Credit card application events
    APPLICATION_SUBMITTED = "application_submitted"
    APPLICATION_CANCELLED = "application_cancelled"


class AuditRecorder(ABC):
    """Receives a record of every committed mutation"""

    @abstractmethod
    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: AuditAction,
        actor_id: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None
    ) -> None:
        pass


class NullAuditRecorder(AuditRecorder):
    """Recorder that drops everything; used when audit logging is disabled"""

    def record(self, entity_type, entity_id, action, actor_id=None, before=None, after=None) -> None:
        return None


@dataclass(frozen=True)
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    action: AuditAction
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    actor_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'actor_id': self.actor_id,
            'before': self.before,
            'after': self.after
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['action'] = AuditAction(data['action'])
        return cls(**data)


class AuditTrail(AuditRecorder):
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self.logger = get_logger("bankcore.audit")
        self._last_hash = ""
        self._sequence = 0
        self._load_chain_head()

    def _load_chain_head(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda e: e['sequence'])
            self._last_hash = latest['current_hash']
            self._sequence = latest['sequence']

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: AuditAction,
        actor_id: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Append an audit event to the chain

        Args:
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            action: What happened
            actor_id: ID of the principal who initiated the action
            before: Entity state before the mutation, if it existed
            after: Entity state after the mutation

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=self._sequence + 1,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash,
                current_hash="",
                actor_id=actor_id,
                before=_to_storable(before) if before is not None else None,
                after=_to_storable(after) if after is not None else None
            )
            event = replace(event, current_hash=event.calculate_hash())

            self.storage.save(self.table_name, event.id, event.to_dict())

            self._last_hash = event.current_hash
            self._sequence = event.sequence
            return event

    def get_all_events(self) -> List[AuditEvent]:
        """Get every audit event in chain order"""
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity in chain order"""
        events_data = self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
        )
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)
        return events

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        if not result['valid']:
            self.logger.error(
                f"Audit chain integrity check failed: {len(result['hash_errors'])} hash errors, "
                f"{len(result['chain_breaks'])} chain breaks"
            )
        return result
