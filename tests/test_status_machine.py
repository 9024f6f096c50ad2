"""
Tests for the collection status machine and priority computation
"""

import pytest
from datetime import date, datetime, timezone

from ar_engine.accounts import CollectionAccount, CollectionStatus, Priority
from ar_engine.aging import AgingBuckets
from ar_engine.audit import AuditRecorder, AuditEventType
from ar_engine.config import EngineConfig
from ar_engine.exceptions import DataIntegrityError, IllegalTransitionError
from ar_engine.ledger import ChargeLine
from ar_engine.money import Money, Currency
from ar_engine.status_machine import (
    CollectionStatusMachine, LEGAL_TRANSITIONS, compute_priority, derive_status, is_legal
)
from ar_engine.storage import InMemoryStorage


AS_OF = datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)


def usd(amount: str) -> Money:
    return Money.from_decimal(amount, Currency.USD)


def buckets(current="0", d31="0", d61="0", d91="0") -> AgingBuckets:
    return AgingBuckets(usd(current), usd(d31), usd(d61), usd(d91))


def make_account(status=CollectionStatus.NEW) -> CollectionAccount:
    return CollectionAccount(id="A1", created_at=AS_OF, updated_at=AS_OF, status=status)


def line(line_id: str, service_date: date, amount: str) -> ChargeLine:
    return ChargeLine(id=line_id, account_id="A1", service_date=service_date, outstanding=usd(amount))


class TestTransitionTable:
    """Test the legal edge set"""

    def test_legal_edges(self):
        assert is_legal(CollectionStatus.NEW, CollectionStatus.ACTIVE)
        assert is_legal(CollectionStatus.ACTIVE, CollectionStatus.RESOLVED)
        assert is_legal(CollectionStatus.ACTIVE, CollectionStatus.WRITTEN_OFF)
        assert is_legal(CollectionStatus.ACTIVE, CollectionStatus.LEGAL)
        assert is_legal(CollectionStatus.RESOLVED, CollectionStatus.ACTIVE)

    def test_everything_else_illegal(self):
        legal_count = sum(len(targets) for targets in LEGAL_TRANSITIONS.values())
        assert legal_count == 5
        assert not is_legal(CollectionStatus.NEW, CollectionStatus.RESOLVED)
        assert not is_legal(CollectionStatus.WRITTEN_OFF, CollectionStatus.ACTIVE)
        assert not is_legal(CollectionStatus.LEGAL, CollectionStatus.RESOLVED)
        assert not is_legal(CollectionStatus.RESOLVED, CollectionStatus.WRITTEN_OFF)


class TestDeriveStatus:
    """Test status implied by aging"""

    def test_new_becomes_active_on_past_due(self):
        assert derive_status(CollectionStatus.NEW, buckets(d31="10.00"), usd("10.00")) == CollectionStatus.ACTIVE

    def test_new_stays_new_while_current(self):
        assert derive_status(CollectionStatus.NEW, buckets(current="10.00"), usd("10.00")) == CollectionStatus.NEW
        assert derive_status(CollectionStatus.NEW, buckets(), usd("0")) == CollectionStatus.NEW

    def test_active_resolves_at_zero_balance(self):
        assert derive_status(CollectionStatus.ACTIVE, buckets(), usd("0")) == CollectionStatus.RESOLVED

    def test_resolved_reopens_only_on_new_charge(self):
        assert derive_status(CollectionStatus.RESOLVED, buckets(current="5.00"), usd("5.00"),
                             has_new_charge=True) == CollectionStatus.ACTIVE
        assert derive_status(CollectionStatus.RESOLVED, buckets(d91="500.00"), usd("500.00")) == \
            CollectionStatus.RESOLVED

    def test_terminal_statuses_unchanged(self):
        assert derive_status(CollectionStatus.WRITTEN_OFF, buckets(), usd("0")) == CollectionStatus.WRITTEN_OFF
        assert derive_status(CollectionStatus.LEGAL, buckets(d91="1.00"), usd("1.00")) == CollectionStatus.LEGAL


class TestPriority:
    """Test weighted-exposure priority"""

    high = usd("2000.00")
    medium = usd("500.00")

    def test_thresholds(self):
        assert compute_priority(CollectionStatus.ACTIVE, buckets(current="100.00"), False,
                                self.high, self.medium) == Priority.LOW
        # 300 * 2 = 600 weighted
        assert compute_priority(CollectionStatus.ACTIVE, buckets(d31="300.00"), False,
                                self.high, self.medium) == Priority.MEDIUM
        # 500 * 4 = 2000 weighted
        assert compute_priority(CollectionStatus.ACTIVE, buckets(d91="500.00"), False,
                                self.high, self.medium) == Priority.HIGH

    def test_older_money_weighs_more(self):
        young = compute_priority(CollectionStatus.ACTIVE, buckets(current="600.00"), False,
                                 self.high, self.medium)
        old = compute_priority(CollectionStatus.ACTIVE, buckets(d91="600.00"), False,
                               self.high, self.medium)
        assert young == Priority.MEDIUM
        assert old == Priority.HIGH

    def test_escalated_is_high_and_resolved_is_low(self):
        assert compute_priority(CollectionStatus.ACTIVE, buckets(), True, self.high, self.medium) == Priority.HIGH
        assert compute_priority(CollectionStatus.RESOLVED, buckets(d91="900.00"), True,
                                self.high, self.medium) == Priority.LOW


class TestCollectionStatusMachine:
    """Test applying classification and actions to accounts"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditRecorder(self.storage)
        self.machine = CollectionStatusMachine(self.audit, EngineConfig())

    def test_apply_classification_activates_and_audits(self):
        account = make_account()
        self.machine.apply_classification(account, buckets(d61="300.00"), usd("300.00"), AS_OF, "run-1")

        assert account.status == CollectionStatus.ACTIVE
        assert account.priority == Priority.MEDIUM
        assert account.last_evaluated_at == AS_OF

        events = [r.event_type for r in self.audit.get_account_history("A1")]
        assert events == [
            AuditEventType.AGING_CLASSIFIED,
            AuditEventType.STATUS_CHANGED,
            AuditEventType.PRIORITY_CHANGED
        ]

    def test_unchanged_classification_writes_nothing(self):
        account = make_account()
        self.machine.apply_classification(account, buckets(d61="300.00"), usd("300.00"), AS_OF)
        count = self.audit.count_records()

        self.machine.apply_classification(account, buckets(d61="300.00"), usd("300.00"), AS_OF)
        assert self.audit.count_records() == count

    def test_escalate_new_account(self):
        account = make_account()
        self.machine.apply_action(account, "escalate", AS_OF, rule_id="R1")

        assert account.status == CollectionStatus.ACTIVE
        assert account.escalated
        assert account.priority == Priority.HIGH

    def test_resolve_clears_escalation(self):
        account = make_account(CollectionStatus.ACTIVE)
        account.escalated = True
        self.machine.apply_action(account, "resolve", AS_OF)

        assert account.status == CollectionStatus.RESOLVED
        assert not account.escalated
        assert account.priority == Priority.LOW

    def test_illegal_transition_rejected_not_applied(self):
        account = make_account(CollectionStatus.NEW)

        with pytest.raises(IllegalTransitionError) as exc_info:
            self.machine.apply_action(account, "write_off", AS_OF)

        assert isinstance(exc_info.value, DataIntegrityError)
        assert exc_info.value.from_status == "new"
        assert exc_info.value.to_status == "written_off"
        assert account.status == CollectionStatus.NEW
        assert self.audit.get_events_by_type(AuditEventType.STATUS_CHANGED) == []

    def test_settled_account_stays_resolved_without_new_charge(self):
        account = make_account()
        old_line = line("L1", date(2025, 12, 1), "300.00")
        self.machine.apply_classification(account, buckets(d91="300.00"), usd("300.00"), AS_OF,
                                          lines=[old_line])
        self.machine.settle(account, AS_OF)

        assert account.status == CollectionStatus.RESOLVED
        assert account.resolved_line_ids == ["L1"]

        self.machine.apply_classification(account, buckets(d91="300.00"), usd("300.00"), AS_OF,
                                          lines=[old_line])
        assert account.status == CollectionStatus.RESOLVED
        assert account.priority == Priority.LOW

    def test_new_charge_reopens_resolved_account(self):
        account = make_account()
        old_line = line("L1", date(2025, 12, 1), "300.00")
        self.machine.apply_classification(account, buckets(d91="300.00"), usd("300.00"), AS_OF,
                                          lines=[old_line])
        self.machine.settle(account, AS_OF)

        new_line = line("L2", date(2026, 3, 20), "50.00")
        self.machine.apply_classification(account, buckets(current="50.00", d91="300.00"), usd("350.00"),
                                          AS_OF, lines=[old_line, new_line])

        assert account.status == CollectionStatus.ACTIVE
        assert account.charge_line_ids == ["L1", "L2"]
        assert account.resolved_line_ids is None
        reasons = [r.after["reason"] for r in self.audit.get_events_by_type(AuditEventType.STATUS_CHANGED)]
        assert reasons == ["aging", "settlement", "aging"]

    def test_paid_off_new_line_does_not_reopen(self):
        account = make_account(CollectionStatus.ACTIVE)
        self.machine.apply_classification(account, buckets(), usd("0"), AS_OF,
                                          lines=[line("L1", date(2025, 12, 1), "0")])
        assert account.status == CollectionStatus.RESOLVED

        self.machine.apply_classification(account, buckets(), usd("0"), AS_OF,
                                          lines=[line("L1", date(2025, 12, 1), "0"),
                                                 line("L2", date(2026, 3, 1), "0")])
        assert account.status == CollectionStatus.RESOLVED

    def test_terminal_status_cannot_be_settled(self):
        account = make_account(CollectionStatus.LEGAL)
        with pytest.raises(IllegalTransitionError):
            self.machine.settle(account, AS_OF)

    def test_record_rejection(self):
        error = IllegalTransitionError("A1", "new", "written_off")
        self.machine.record_rejection(error, AS_OF, correlation_id="run-1")

        records = self.audit.get_events_by_type(AuditEventType.TRANSITION_REJECTED)
        assert len(records) == 1
        assert records[0].account_id == "A1"
        assert records[0].after == {"status": "written_off", "applied": False}
        assert records[0].correlation_id == "run-1"
