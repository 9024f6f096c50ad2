"""
Audit Trail Module

Append-only, hash-chained audit log for every status transition, rule action
and amortization event. Records are chained per stream (one stream per account,
one per batch run) with SHA-256 for tamper detection, and are written inside
the same transaction as the change they describe.
"""

import hashlib
import json
from datetime import datetime, date
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum
import uuid

from .money import Money
from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Aging and status
    AGING_CLASSIFIED = "aging_classified"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    TRANSITION_REJECTED = "transition_rejected"
    COLLECTOR_ASSIGNED = "collector_assigned"

    # Rule engine
    RULE_ACTION_EMITTED = "rule_action_emitted"
    TASK_CREATED = "task_created"
    TASK_RESOLVED = "task_resolved"
    LETTER_QUEUED = "letter_queued"
    LETTER_DISPATCHED = "letter_dispatched"
    ACTIVITY_RECORDED = "activity_recorded"

    # Payment plans
    PLAN_CREATED = "plan_created"
    PLAN_PAYMENT_APPLIED = "plan_payment_applied"
    PLAN_PAYMENT_MISSED = "plan_payment_missed"
    PLAN_AMENDED = "plan_amended"
    PLAN_COMPLETED = "plan_completed"
    PLAN_DEFAULTED = "plan_defaulted"
    PLAN_CANCELED = "plan_canceled"

    # Batch runs
    RUN_FINISHED = "run_finished"


def _serialize(value: Any) -> Any:
    """Convert values to a JSON-serializable form"""
    if isinstance(value, Money):
        return value.to_dict()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class AuditRecord(StorageRecord):
    """
    Immutable audit record with hash chaining for tamper detection
    """
    stream: str            # Chain the record belongs to (account id or run:<id>)
    sequence: int          # Position within the stream, starting at 1
    event_type: AuditEventType
    component: str         # Component that made the change
    entity_type: str
    entity_id: str
    occurred_at: datetime
    previous_hash: str
    current_hash: str
    account_id: Optional[str] = None
    correlation_id: Optional[str] = None
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.before = _serialize(self.before or {})
        self.after = _serialize(self.after or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this record
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'stream': self.stream,
            'sequence': self.sequence,
            'event_type': self.event_type.value,
            'component': self.component,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'occurred_at': self.occurred_at.isoformat(),
            'previous_hash': self.previous_hash,
            'account_id': self.account_id,
            'correlation_id': self.correlation_id,
            'before': self.before,
            'after': self.after
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        result['occurred_at'] = self.occurred_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditRecord':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'occurred_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditRecorder:
    """
    Append-only audit recorder. Exposes no update or delete path.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_records"):
        self.storage = storage
        self.table_name = table_name

    def _stream_records(self, stream: str) -> List[AuditRecord]:
        records = [AuditRecord.from_dict(data) for data in self.storage.find(self.table_name, {"stream": stream})]
        records.sort(key=lambda r: r.sequence)
        return records

    def record(
        self,
        event_type: AuditEventType,
        component: str,
        entity_type: str,
        entity_id: str,
        occurred_at: datetime,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        account_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        stream: Optional[str] = None
    ) -> AuditRecord:
        """
        Append an audit record to its stream

        Args:
            event_type: Type of audit event
            component: Component responsible for the change
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            occurred_at: Logical time of the change (the run's as-of or the posting time)
            before: Values before the change
            after: Values after the change
            account_id: Owning account, if any
            correlation_id: ID of the triggering event or run
            stream: Chain to append to; defaults to the account id

        Returns:
            Created AuditRecord
        """
        stream = stream or account_id or f"{entity_type}:{entity_id}"

        with self.storage.atomic():
            existing = self._stream_records(stream)
            last = existing[-1] if existing else None
            now = occurred_at

            record = AuditRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                stream=stream,
                sequence=(last.sequence + 1) if last else 1,
                event_type=event_type,
                component=component,
                entity_type=entity_type,
                entity_id=entity_id,
                occurred_at=occurred_at,
                previous_hash=last.current_hash if last else "",
                current_hash="",
                account_id=account_id,
                correlation_id=correlation_id,
                before=before or {},
                after=after or {}
            )
            record.current_hash = record.calculate_hash()

            self.storage.save(self.table_name, record.id, record.to_dict())
            return record

    def get_account_history(
        self,
        account_id: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        event_types: Optional[Iterable[AuditEventType]] = None
    ) -> List[AuditRecord]:
        """
        Get audit records for an account in step order

        Args:
            account_id: Account ID
            start_time: Start of time range (inclusive)
            end_time: End of time range (inclusive)
            event_types: Restrict to these event types

        Returns:
            List of AuditRecord objects ordered by stream sequence
        """
        records = [AuditRecord.from_dict(data)
                   for data in self.storage.find(self.table_name, {"account_id": account_id})]
        records = self._filter(records, start_time, end_time, event_types)
        records.sort(key=lambda r: (r.stream, r.sequence))
        return records

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditRecord]:
        """Get audit records of one type within a time range"""
        records = [AuditRecord.from_dict(data)
                   for data in self.storage.find(self.table_name, {"event_type": event_type.value})]
        records = self._filter(records, start_time, end_time, None)
        records.sort(key=lambda r: (r.occurred_at, r.stream, r.sequence))
        if limit:
            records = records[-limit:]
        return records

    def get_events(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditRecord]:
        """Get all audit records within a time range"""
        records = [AuditRecord.from_dict(data) for data in self.storage.load_all(self.table_name)]
        records = self._filter(records, start_time, end_time, None)
        records.sort(key=lambda r: (r.occurred_at, r.stream, r.sequence))
        if limit:
            records = records[-limit:]
        return records

    def get_stream(self, stream: str) -> List[AuditRecord]:
        """Get one chain in sequence order"""
        return self._stream_records(stream)

    def count_records(self) -> int:
        return self.storage.count(self.table_name)

    @staticmethod
    def _filter(records, start_time, end_time, event_types):
        if start_time:
            records = [r for r in records if r.occurred_at >= start_time]
        if end_time:
            records = [r for r in records if r.occurred_at <= end_time]
        if event_types:
            wanted = set(event_types)
            records = [r for r in records if r.event_type in wanted]
        return records

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of every audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_records': 0,
            'streams': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        streams: Dict[str, List[AuditRecord]] = {}
        for data in self.storage.load_all(self.table_name):
            record = AuditRecord.from_dict(data)
            streams.setdefault(record.stream, []).append(record)

        result['streams'] = len(streams)

        for stream, records in streams.items():
            records.sort(key=lambda r: r.sequence)
            result['total_records'] += len(records)

            previous_hash = ""
            for position, record in enumerate(records, start=1):
                if not record.verify_hash():
                    result['valid'] = False
                    result['hash_errors'].append({
                        'record_id': record.id,
                        'stream': stream,
                        'sequence': record.sequence
                    })
                if record.previous_hash != previous_hash or record.sequence != position:
                    result['valid'] = False
                    result['chain_breaks'].append({
                        'record_id': record.id,
                        'stream': stream,
                        'sequence': record.sequence,
                        'expected_previous_hash': previous_hash,
                        'actual_previous_hash': record.previous_hash
                    })
                previous_hash = record.current_hash

        return result
