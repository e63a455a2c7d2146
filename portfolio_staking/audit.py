"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every portfolio, wallet and transaction state change is logged here.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, _to_storable


class AuditEventType(Enum):
    """Types of audit events"""
    # Portfolio events
    PORTFOLIO_CREATED = "portfolio_created"
    PORTFOLIO_STATUS_CHANGED = "portfolio_status_changed"
    RATE_APPLIED = "rate_applied"
    PRINCIPAL_CREDITED = "principal_credited"
    PRINCIPAL_DEBITED = "principal_debited"
    INTEREST_DEBITED = "interest_debited"

    # Accrual events
    INTEREST_ACCRUED = "interest_accrued"
    ACCRUAL_FAILED = "accrual_failed"
    ACCRUAL_RUN_COMPLETED = "accrual_run_completed"

    # Transaction events
    TRANSACTION_SUBMITTED = "transaction_submitted"
    TRANSACTION_APPROVED = "transaction_approved"
    TRANSACTION_REJECTED = "transaction_rejected"

    # Wallet events
    WALLET_CREATED = "wallet_created"
    WALLET_UPDATED = "wallet_updated"
    WALLET_ACTIVATED = "wallet_activated"
    WALLET_DEACTIVATED = "wallet_deactivated"
    WALLET_DELETED = "wallet_deleted"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # portfolio, transaction, wallet, accrual_run
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None  # User or admin who initiated the action

    def __post_init__(self):
        self.metadata = _to_storable(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
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
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = cls._parse_timestamps(data)
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        # (event_id, sequence, current_hash) of the newest event we wrote
        self._tail: Optional[Tuple[str, int, str]] = None

    def _load_last_hash(self) -> str:
        events = self.storage.load_all(self.table_name)
        if not events:
            return ""
        latest = max(events, key=lambda x: x.get('sequence', 0))
        return latest.get('current_hash', "")

    def _last_hash(self, sequence: int) -> str:
        """
        Hash of the event at sequence - 1

        The cached tail is trusted only while it is still stored at that
        position. A rolled-back unit of work or a writer sharing the same
        database invalidates it and forces a full reload.
        """
        tail = self._tail
        if tail is not None:
            event_id, tail_sequence, tail_hash = tail
            if tail_sequence == sequence - 1:
                row = self.storage.load(self.table_name, event_id)
                if row is not None and row.get('current_hash') == tail_hash:
                    return tail_hash
        self._tail = None
        return self._load_last_hash()

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            # Position in the chain
            sequence = self.storage.count(self.table_name)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash(sequence),
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            record = event.to_dict()
            record['sequence'] = sequence
            self.storage.save(self.table_name, event.id, record)
            self._tail = (event.id, sequence, event.current_hash)
            return event

    def _ordered_events(self) -> List[AuditEvent]:
        rows = self.storage.load_all(self.table_name)
        rows.sort(key=lambda x: x.get('sequence', 0))
        events = []
        for row in rows:
            row.pop('sequence', None)
            events.append(AuditEvent.from_dict(row))
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events for one entity, oldest first"""
        events = [
            e for e in self._ordered_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self._ordered_events() if e.event_type == event_type]

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

        events = self._ordered_events()
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
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
