"""
Audit Trail Module

Hash-chained append-only audit log with SHA-256 for tamper detection.
Every customer and account state change is logged here, inside the same
atomic block as the change itself, so history and state never disagree.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass, fields
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
from decimal import Decimal
import logging
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import StaleAuditHead, StaleRecordError, UniqueConstraintViolation


logger = logging.getLogger("accounts.audit")


class AuditEventType(Enum):
    """Types of audit events"""
    # Customer events
    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_UPDATED = "customer_updated"
    CUSTOMER_DEACTIVATED = "customer_deactivated"

    # Account events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_BALANCE_ADJUSTED = "account_balance_adjusted"
    ACCOUNT_CLOSED = "account_closed"
    ACCOUNT_REACTIVATED = "account_reactivated"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # customer or account
    entity_id: str
    sequence: int     # Position in the chain, starting at 1
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

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
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from a stored dictionary"""
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in data.items() if k in known}
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail

    The chain head (last sequence and hash) lives in storage, not in memory.
    It is read under a row lock and advanced with a version check, so writers
    queue on it and can never fork the chain.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self._ensure_head()

    def _ensure_head(self) -> None:
        """Create the head row up front so appends only ever update it"""
        if self.storage.exists(self.head_table, self.HEAD_ID):
            return
        try:
            self.storage.insert(self.head_table, self.HEAD_ID, {"sequence": 0, "hash": ""})
        except UniqueConstraintViolation:
            # Another process created it between the check and the insert
            logger.debug("Audit chain head already initialised")

    def _chain_head(self) -> Tuple[int, str, int]:
        """Return (sequence, hash, version) of the chain head"""
        head = self.storage.load_for_update(self.head_table, self.HEAD_ID)
        if head is None:
            return 0, "", 0
        return head['sequence'], head['hash'], head['version']

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

        Raises:
            StaleAuditHead: If another writer advanced the chain first
        """
        with self.storage.atomic():
            sequence, last_hash, head_version = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=sequence + 1,
                previous_hash=last_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            head = {"sequence": event.sequence, "hash": event.current_hash}
            try:
                self.storage.insert(self.table_name, event.id, event.to_dict())
                if head_version == 0:
                    self.storage.insert(self.head_table, self.HEAD_ID, head)
                else:
                    self.storage.update(self.head_table, self.HEAD_ID, head, head_version)
            except (StaleRecordError, UniqueConstraintViolation) as e:
                raise StaleAuditHead("Audit chain was advanced concurrently") from e

            return event

    def _load_events(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        data = self.storage.find(self.table_name, filters or {})
        events = [AuditEvent.from_dict(item) for item in data]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of (most recent) events to return
        """
        events = self._load_events({'entity_type': entity_type, 'entity_id': entity_id})
        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        """Get all audit events in chain order"""
        events = self._load_events()
        if limit:
            events = events[-limit:]
        return events

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
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash or event.sequence != position + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
