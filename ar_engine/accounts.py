"""
Collection Account Module

Collection-side state for each patient account: last classified balance and
aging buckets, collection status, priority, collector assignment and contact
history counters. Saved with optimistic versioning.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import threading

from .aging import AgingBuckets
from .money import Money, Currency
from .storage import StorageInterface, StorageRecord


class CollectionStatus(Enum):
    """Collection status of an account"""
    NEW = "new"
    ACTIVE = "active"
    RESOLVED = "resolved"
    WRITTEN_OFF = "written_off"
    LEGAL = "legal"


class Priority(Enum):
    """Collector work priority"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class CollectionAccount(StorageRecord):
    """Collection state for one patient financial relationship"""
    currency: Currency = Currency.USD
    balance: Money = None
    buckets: AgingBuckets = None
    status: CollectionStatus = CollectionStatus.NEW
    priority: Priority = Priority.LOW
    assigned_collector: Optional[str] = None
    contact_attempts: int = 0
    last_activity_at: Optional[datetime] = None
    last_evaluated_at: Optional[datetime] = None
    escalated: bool = False
    # Ids of every charge line seen by the last classification
    charge_line_ids: List[str] = field(default_factory=list)
    # Snapshot of charge_line_ids taken when the account resolved
    resolved_line_ids: Optional[List[str]] = None
    # rule id -> {"count": int, "as_of": "YYYY-MM-DD"}
    rule_streaks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    version: int = 0

    def __post_init__(self):
        if self.balance is None:
            self.balance = Money.zero(self.currency)
        if self.buckets is None:
            self.buckets = AgingBuckets.empty(self.currency)

    @property
    def account_id(self) -> str:
        return self.id

    @property
    def is_terminal(self) -> bool:
        """Written-off and legal accounts have no outgoing transitions"""
        return self.status in (CollectionStatus.WRITTEN_OFF, CollectionStatus.LEGAL)


class AccountLocks:
    """
    In-process per-account locks

    Every writer to an account's records (batch unit, payment posting, manual
    activity) holds the account's lock, so an account's audit stream is
    appended by one writer at a time.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, account_id: str):
        with self._lock_for(account_id):
            yield


class AccountRepository:
    """Loads and saves CollectionAccount records"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.accounts_table = "collection_accounts"

    def get(self, account_id: str) -> Optional[CollectionAccount]:
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def get_or_new(self, account_id: str, currency: Currency, now: datetime) -> CollectionAccount:
        """Existing account, or an unsaved NEW account at version 0"""
        account = self.get(account_id)
        if account:
            return account
        return CollectionAccount(id=account_id, created_at=now, updated_at=now, currency=currency)

    def list_accounts(self, status: Optional[CollectionStatus] = None) -> List[CollectionAccount]:
        filters = {"status": status.value} if status else {}
        accounts = [self._account_from_dict(data) for data in self.storage.find(self.accounts_table, filters)]
        accounts.sort(key=lambda a: a.id)
        return accounts

    def save(self, account: CollectionAccount, now: datetime) -> CollectionAccount:
        """
        Save with optimistic versioning

        Raises:
            ConcurrencyConflict: if the stored version moved since the account was read
        """
        expected = account.version
        account.version = expected + 1
        account.updated_at = now
        try:
            self.storage.save_versioned(self.accounts_table, account.id,
                                        self._account_to_dict(account), expected)
        except Exception:
            account.version = expected
            raise
        return account

    def _account_to_dict(self, account: CollectionAccount) -> Dict:
        return {
            "id": account.id,
            "created_at": account.created_at.isoformat(),
            "updated_at": account.updated_at.isoformat(),
            "currency": account.currency.code,
            "balance_minor": account.balance.minor,
            "buckets": account.buckets.to_dict(),
            "status": account.status.value,
            "priority": account.priority.value,
            "assigned_collector": account.assigned_collector,
            "contact_attempts": account.contact_attempts,
            "last_activity_at": account.last_activity_at.isoformat() if account.last_activity_at else None,
            "last_evaluated_at": account.last_evaluated_at.isoformat() if account.last_evaluated_at else None,
            "escalated": account.escalated,
            "charge_line_ids": account.charge_line_ids,
            "resolved_line_ids": account.resolved_line_ids,
            "rule_streaks": account.rule_streaks,
            "version": account.version
        }

    def _account_from_dict(self, data: Dict) -> CollectionAccount:
        currency = Currency.from_code(data["currency"])

        def get_datetime(key: str) -> Optional[datetime]:
            value = data.get(key)
            return datetime.fromisoformat(value) if value else None

        return CollectionAccount(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            currency=currency,
            balance=Money(int(data["balance_minor"]), currency),
            buckets=AgingBuckets.from_dict(data["buckets"], currency),
            status=CollectionStatus(data["status"]),
            priority=Priority(data["priority"]),
            assigned_collector=data.get("assigned_collector"),
            contact_attempts=int(data.get("contact_attempts", 0)),
            last_activity_at=get_datetime("last_activity_at"),
            last_evaluated_at=get_datetime("last_evaluated_at"),
            escalated=bool(data.get("escalated", False)),
            charge_line_ids=list(data.get("charge_line_ids") or []),
            resolved_line_ids=data.get("resolved_line_ids"),
            rule_streaks=data.get("rule_streaks") or {},
            version=int(data.get("version", 0))
        )
