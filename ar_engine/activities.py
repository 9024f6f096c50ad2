"""
Collection Activity Module

Append-only history of calls, letters, rule actions, payments and missed
installments per account. Ordering by (occurred_at, sequence) defines the
history the rule engine evaluates against.
"""

from dataclasses import dataclass
from datetime import datetime, date
from enum import Enum
from typing import Dict, Iterable, List, Optional
import uuid

from .audit import AuditRecorder, AuditEventType
from .storage import StorageInterface, StorageRecord


class ActivityType(Enum):
    """Kinds of collection activity"""
    CALL = "call"
    LETTER = "letter"
    RULE_ACTION = "rule_action"
    PAYMENT = "payment"
    DELINQUENCY = "delinquency"      # Missed payment-plan installment
    PLAN_SETUP = "plan_setup"
    SETTLEMENT = "settlement"

    @property
    def is_contact(self) -> bool:
        """Counts toward the account's contact attempts"""
        return self in (ActivityType.CALL, ActivityType.LETTER)


@dataclass
class CollectionActivity(StorageRecord):
    """Immutable record of one collection activity"""
    account_id: str
    activity_type: ActivityType
    occurred_at: datetime
    sequence: int
    outcome: Optional[str] = None
    description: str = ""
    next_action: Optional[str] = None
    next_action_date: Optional[date] = None
    performed_by: str = "system"
    related_id: Optional[str] = None   # Task, letter, plan or payment the activity refers to
    dedup_key: Optional[str] = None


class ActivityLog:
    """Appends and queries collection activities"""

    def __init__(self, storage: StorageInterface, audit: AuditRecorder):
        self.storage = storage
        self.audit = audit
        self.activities_table = "collection_activities"

    def append(
        self,
        account_id: str,
        activity_type: ActivityType,
        occurred_at: datetime,
        outcome: Optional[str] = None,
        description: str = "",
        next_action: Optional[str] = None,
        next_action_date: Optional[date] = None,
        performed_by: str = "system",
        related_id: Optional[str] = None,
        dedup_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
        component: str = "activity_log"
    ) -> CollectionActivity:
        """
        Append an activity; an existing activity with the same dedup key is
        returned unchanged instead of writing a duplicate
        """
        if dedup_key:
            existing = self.find_by_dedup_key(dedup_key)
            if existing:
                return existing

        history = self.storage.find(self.activities_table, {"account_id": account_id})

        activity = CollectionActivity(
            id=str(uuid.uuid4()),
            created_at=occurred_at,
            updated_at=occurred_at,
            account_id=account_id,
            activity_type=activity_type,
            occurred_at=occurred_at,
            sequence=len(history) + 1,
            outcome=outcome,
            description=description,
            next_action=next_action,
            next_action_date=next_action_date,
            performed_by=performed_by,
            related_id=related_id,
            dedup_key=dedup_key
        )
        self.storage.save(self.activities_table, activity.id, self._activity_to_dict(activity))

        self.audit.record(
            event_type=AuditEventType.ACTIVITY_RECORDED,
            component=component,
            entity_type="collection_activity",
            entity_id=activity.id,
            occurred_at=occurred_at,
            account_id=account_id,
            correlation_id=correlation_id,
            after={
                "activity_type": activity_type.value,
                "outcome": outcome,
                "related_id": related_id
            }
        )
        return activity

    def find_by_dedup_key(self, dedup_key: str) -> Optional[CollectionActivity]:
        found = self.storage.find(self.activities_table, {"dedup_key": dedup_key})
        if found:
            return self._activity_from_dict(found[0])
        return None

    def history(self, account_id: str) -> List[CollectionActivity]:
        """Activities for an account, oldest first"""
        activities = [self._activity_from_dict(data)
                      for data in self.storage.find(self.activities_table, {"account_id": account_id})]
        activities.sort(key=lambda a: (a.occurred_at, a.sequence))
        return activities

    def latest(self, account_id: str,
               exclude: Iterable[ActivityType] = (ActivityType.RULE_ACTION,)) -> Optional[CollectionActivity]:
        """Most recent activity, skipping the excluded types"""
        excluded = set(exclude)
        for activity in reversed(self.history(account_id)):
            if activity.activity_type not in excluded:
                return activity
        return None

    def all_activities(self) -> List[CollectionActivity]:
        return [self._activity_from_dict(data) for data in self.storage.load_all(self.activities_table)]

    def _activity_to_dict(self, activity: CollectionActivity) -> Dict:
        return {
            "id": activity.id,
            "created_at": activity.created_at.isoformat(),
            "updated_at": activity.updated_at.isoformat(),
            "account_id": activity.account_id,
            "activity_type": activity.activity_type.value,
            "occurred_at": activity.occurred_at.isoformat(),
            "sequence": activity.sequence,
            "outcome": activity.outcome,
            "description": activity.description,
            "next_action": activity.next_action,
            "next_action_date": activity.next_action_date.isoformat() if activity.next_action_date else None,
            "performed_by": activity.performed_by,
            "related_id": activity.related_id,
            "dedup_key": activity.dedup_key
        }

    def _activity_from_dict(self, data: Dict) -> CollectionActivity:
        return CollectionActivity(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            account_id=data["account_id"],
            activity_type=ActivityType(data["activity_type"]),
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            sequence=int(data["sequence"]),
            outcome=data.get("outcome"),
            description=data.get("description", ""),
            next_action=data.get("next_action"),
            next_action_date=date.fromisoformat(data["next_action_date"]) if data.get("next_action_date") else None,
            performed_by=data.get("performed_by", "system"),
            related_id=data.get("related_id"),
            dedup_key=data.get("dedup_key")
        )
