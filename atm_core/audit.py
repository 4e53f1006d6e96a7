"""
Audit Trail Module

Hash-chained audit log with SHA-256 for tamper detection. Logins, lockouts,
PIN changes and every administrative operation are recorded here.
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .logging_config import get_logger
from .storage import StorageError, StorageInterface


class AuditEventType(Enum):
    """Types of audit events"""
    # Authentication events
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_TEMPORARILY_LOCKED = "account_temporarily_locked"
    LOGOUT = "logout"
    PIN_CHANGED = "pin_changed"

    # Administrative events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_UPDATED = "account_updated"
    ACCOUNT_DELETED = "account_deleted"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    PIN_RESET = "pin_reset"
    WITHDRAW_LIMIT_CHANGED = "withdraw_limit_changed"
    ADMIN_BOOTSTRAPPED = "admin_bootstrapped"


@dataclass
class AuditEvent:
    """
    Immutable audit event with hash chaining for tamper detection
    """
    id: str
    sequence: int
    created_at: datetime
    event_type: AuditEventType
    entity_id: str        # Card number the event applies to
    previous_hash: str    # Hash of previous audit event for chaining
    current_hash: str     # SHA-256 hash of this event
    metadata: Dict[str, Any] = field(default_factory=dict)
    actor: Optional[str] = None  # Card number of the admin who acted, if any

    def __post_init__(self):
        if self.metadata:
            self._serialize_metadata()

    def _serialize_metadata(self) -> None:
        """Convert metadata values to JSON-serializable format"""
        def convert_value(value):
            if isinstance(value, Decimal):
                return str(value)
            elif isinstance(value, datetime):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [convert_value(v) for v in value]
            else:
                return value

        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'actor': self.actor,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata,
            'actor': self.actor
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            sequence=int(data['sequence']),
            created_at=datetime.fromisoformat(data['created_at']),
            event_type=AuditEventType(data['event_type']),
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            actor=data.get('actor')
        )


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.logger = get_logger("atm.audit")
        self._lock = threading.Lock()
        self._last_hash = ""
        self._next_sequence = 1
        self._load_chain_head()

    def _load_chain_head(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self._load_events()
        if events:
            self._last_hash = events[-1].current_hash
            self._next_sequence = events[-1].sequence + 1

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(d) for d in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def log_event(
        self,
        event_type: AuditEventType,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Audit is secondary to the operation being audited: a storage
        failure here is logged and reported as None, it does not undo
        the operation.
        """
        with self._lock:
            event = AuditEvent(
                id=str(uuid.uuid4()),
                sequence=self._next_sequence,
                created_at=datetime.now(timezone.utc),
                event_type=event_type,
                entity_id=entity_id,
                previous_hash=self._last_hash,
                current_hash="",
                metadata=metadata or {},
                actor=actor
            )
            event.current_hash = event.calculate_hash()

            try:
                self.storage.save(self.table_name, event.id, event.to_dict())
            except StorageError as e:
                self.logger.error(f"Failed to write audit event {event_type.value}: {e}")
                return None

            self._last_hash = event.current_hash
            self._next_sequence += 1
            return event

    def get_events_for_entity(self, entity_id: str, limit: Optional[int] = None) -> List[AuditEvent]:
        """All audit events for one card, oldest first"""
        events = [e for e in self._load_events() if e.entity_id == entity_id]
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self._load_events() if e.event_type == event_type]

    def get_all_events(self) -> List[AuditEvent]:
        return self._load_events()

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

        events = self._load_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
