"""
Audit Trail Module

Append-only record of what happened to accounts and transfers. Each event
stores the SHA-256 of its predecessor, so an edited or deleted event shows up
as a broken link when the chain is verified.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """What an audit event records"""
    ACCOUNT_OPENED = "account_opened"

    TRANSFER_COMMITTED = "transfer_committed"
    TRANSFER_REJECTED = "transfer_rejected"
    TRANSFER_COMPENSATED = "transfer_compensated"

    # Escalations that need an operator
    COMPENSATION_FAILED = "compensation_failed"
    RECONCILIATION_REQUIRED = "reconciliation_required"
    LEDGER_ENTRY_REPAIRED = "ledger_entry_repaired"


def _json_safe(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event chained to its predecessor by hash
    """
    event_type: AuditEventType
    entity_type: str  # account, transfer, ...
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """Writes and verifies the audit chain; one writer at a time"""

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._last_hash = self._load_last_hash()

    def _load_last_hash(self) -> str:
        events = self.storage.load_all(self.table_name)
        if events:
            return events[-1].get('current_hash', "")
        return ""

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event linked to the current chain head

        Args:
            event_type: What happened
            entity_type: "account" or "transfer"
            entity_id: Account number or transfer attempt id
            metadata: Details; Decimals and datetimes are stored as strings
            user_id: Identity that initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash
            return event

    def get_all_events(self) -> List[AuditEvent]:
        """All audit events in chain order"""
        return [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All audit events for one entity in chain order"""
        events_data = self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
        )
        return [AuditEvent.from_dict(data) for data in events_data]

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        return [AuditEvent.from_dict(data) for data in events_data]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Recompute every hash and check each link to its predecessor

        Returns:
            Dictionary with `valid`, `total_events`, `hash_errors` and
            `chain_breaks` (event ids)
        """
        events = self.get_all_events()
        result = {
            'valid': True,
            'total_events': len(events),
            'hash_errors': [],
            'chain_breaks': []
        }

        previous_hash = ""
        for event in events:
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append(event.id)
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append(event.id)
            previous_hash = event.current_hash

        return result
