"""
Tests for the collections service facade and reporting
"""

import pytest
from datetime import datetime, timezone, date, timedelta

from ar_engine.accounts import CollectionStatus, Priority
from ar_engine.activities import ActivityType
from ar_engine.audit import AuditEventType
from ar_engine.batch import RunStatus
from ar_engine.config import EngineConfig
from ar_engine.exceptions import ExternalReadError, IllegalTransitionError
from ar_engine.money import Money, Currency
from ar_engine.service import CollectionsService, create_service
from ar_engine.storage import InMemoryStorage, SQLiteStorage


AS_OF = datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)

OVERDUE = {"kind": "bucket_at_least", "bucket": "91_plus", "amount": "0"}
CALL_TASK = {"type": "create_task", "task_type": "call"}


def usd(amount: str) -> Money:
    return Money.from_decimal(amount, Currency.USD)


def seed(service: CollectionsService) -> None:
    ledger = service.ledger
    ledger.open_account("A1")
    ledger.post_charge("A1", "A1-L1", AS_OF.date() - timedelta(days=100), usd("500.00"))
    ledger.open_account("A2")
    ledger.post_charge("A2", "A2-L1", AS_OF.date() - timedelta(days=45), usd("80.00"))
    ledger.open_account("A3")
    ledger.post_charge("A3", "A3-L1", AS_OF.date() - timedelta(days=3), usd("20.00"))
    service.create_rule("Call 90+ balances", OVERDUE, CALL_TASK, 1, AS_OF, rule_id="R1")


@pytest.fixture
def service():
    svc = CollectionsService(InMemoryStorage(), config=EngineConfig(batch_max_workers=2))
    seed(svc)
    return svc


@pytest.fixture
def evaluated(service):
    service.run_batch(AS_OF)
    return service


class TestQueries:
    """Test account and plan state queries"""

    def test_account_state(self, evaluated):
        state = evaluated.get_account_state("A1")

        assert state["balance"] == usd("500.00")
        assert state["aging_buckets"]["91_plus"] == usd("500.00")
        assert state["aging_buckets"]["0_30"] == usd("0")
        assert state["status"] == "active"
        assert state["priority"] == "high"
        assert state["last_evaluated_at"] == AS_OF

    def test_unknown_account_state(self, service):
        with pytest.raises(ValueError):
            service.get_account_state("A1")

    def test_plan_state(self, evaluated):
        plan = evaluated.create_plan("A1", usd("500.00"), date(2026, 5, 1), AS_OF, monthly_payment=usd("100.00"))
        evaluated.post_payment("PAY-1", plan.id, usd("100.00"), AS_OF + timedelta(days=1))

        state = evaluated.get_plan_state(plan.id)
        assert state["remaining_balance"] == usd("400.00")
        assert state["payments_remaining"] == 4
        assert state["next_payment_date"] == date(2026, 6, 1)
        assert state["status"] == "active"
        assert state["missed_payments"] == 0

        with pytest.raises(ValueError):
            evaluated.get_plan_state("missing")

    def test_account_history_in_order(self, evaluated):
        history = evaluated.get_account_history("A1")
        sequences = [r.sequence for r in history]

        assert sequences == sorted(sequences)
        assert history[0].event_type == AuditEventType.AGING_CLASSIFIED
        assert AuditEventType.RULE_ACTION_EMITTED in {r.event_type for r in history}


class TestCollectorActions:
    """Test manual activities, assignment and settlement"""

    def test_record_contact_attempts(self, evaluated):
        evaluated.record_activity("A2", ActivityType.CALL, AS_OF, outcome="no_answer", performed_by="collector-7")
        evaluated.record_activity("A2", ActivityType.PAYMENT, AS_OF, outcome="promise_to_pay")
        evaluated.record_activity("A2", ActivityType.LETTER, AS_OF, outcome="sent")

        account = evaluated.accounts.get("A2")
        assert account.contact_attempts == 2
        assert account.last_activity_at == AS_OF
        assert [a.activity_type for a in evaluated.get_activities("A2")] == [
            ActivityType.CALL, ActivityType.PAYMENT, ActivityType.LETTER
        ]

    def test_activity_before_first_run_creates_account(self, service):
        service.record_activity("A2", ActivityType.CALL, AS_OF, outcome="left_message")

        account = service.accounts.get("A2")
        assert account.status == CollectionStatus.NEW
        assert account.contact_attempts == 1

    def test_activity_rejections(self, service):
        with pytest.raises(ValueError):
            service.record_activity("A1", ActivityType.RULE_ACTION, AS_OF)
        with pytest.raises(ExternalReadError):
            service.record_activity("NOPE", ActivityType.CALL, AS_OF)

    def test_assign_collector(self, evaluated):
        account = evaluated.assign_collector("A1", "collector-7", AS_OF)

        assert account.assigned_collector == "collector-7"
        assigned = evaluated.audit.get_events_by_type(AuditEventType.COLLECTOR_ASSIGNED)
        assert assigned[0].after == {"assigned_collector": "collector-7"}

        with pytest.raises(ValueError):
            evaluated.assign_collector("NOPE", "collector-7", AS_OF)

    def test_settle_active_account(self, evaluated):
        account = evaluated.settle_account("A1", AS_OF, reference="SET-1", performed_by="collector-7")

        assert account.status == CollectionStatus.RESOLVED
        assert account.priority == Priority.LOW
        settlement = evaluated.get_activities("A1")[-1]
        assert settlement.activity_type == ActivityType.SETTLEMENT
        assert settlement.related_id == "SET-1"

    def test_settle_new_account_rejected(self, evaluated):
        with pytest.raises(IllegalTransitionError):
            evaluated.settle_account("A3", AS_OF, reference="SET-2")

        assert evaluated.accounts.get("A3").status == CollectionStatus.NEW
        rejected = evaluated.audit.get_events_by_type(AuditEventType.TRANSITION_REJECTED)
        assert [r.account_id for r in rejected] == ["A3"]
        assert evaluated.get_activities("A3") == []

    def test_resolve_task_and_acknowledge_letter(self, evaluated):
        task = evaluated.tasks.list_tasks(account_id="A1")[0]
        resolution = evaluated.resolve_task(task.id, "collector-7", "reached patient", AS_OF)

        assert resolution.id == task.id
        assert evaluated.tasks.list_tasks(open_only=True) == []
        with pytest.raises(ValueError):
            evaluated.resolve_task("missing", "collector-7", "n/a", AS_OF)
        with pytest.raises(ValueError):
            evaluated.acknowledge_letter("missing", AS_OF)


class TestCollectionsSummary:
    """Test portfolio reporting"""

    def test_summary(self, evaluated):
        plan = evaluated.create_plan("A1", usd("500.00"), date(2026, 5, 1), AS_OF, term=5)
        evaluated.post_payment("PAY-1", plan.id, usd("100.00"), AS_OF)
        evaluated.assign_collector("A2", "collector-7", AS_OF)

        summary = evaluated.collections_summary(AS_OF)

        assert summary["currency"] == "USD"
        assert summary["aging"]["91_plus"] == usd("500.00")
        assert summary["aging"]["31_60"] == usd("80.00")
        assert summary["aging"]["0_30"] == usd("20.00")
        assert summary["total_balance"] == usd("600.00")
        assert summary["accounts_by_status"]["active"] == {"count": 2, "balance": usd("580.00")}
        assert summary["accounts_by_status"]["new"]["count"] == 1
        assert summary["accounts_by_priority"]["high"] == 1
        assert summary["assigned_accounts"] == 1
        assert summary["unassigned_accounts"] == 2
        assert summary["plans_by_status"]["active"] == {"count": 1, "remaining_balance": usd("400.00")}
        assert summary["activity_counts"]["rule_action"] == {"create_task": 1}
        assert summary["activity_counts"]["plan_setup"] == {"enrolled": 1}
        assert summary["open_tasks"] == 1
        assert summary["pending_letters"] == 0

    def test_activity_window(self, evaluated):
        evaluated.record_activity("A2", ActivityType.CALL, AS_OF - timedelta(days=45), outcome="no_answer")

        summary = evaluated.collections_summary(AS_OF)
        assert "call" not in summary["activity_counts"]


class TestSQLiteBackend:
    """Test the engine end to end on SQLite"""

    def test_run_and_reopen(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'collections.db'}"
        config = EngineConfig(database_url=url, log_format="text", batch_max_workers=2)
        service = create_service(config)
        assert isinstance(service.storage, SQLiteStorage)
        seed(service)

        report = service.run_batch(AS_OF)
        assert report.status == RunStatus.COMPLETED
        assert report.actions_emitted == 1
        assert service.run_batch(AS_OF).actions_emitted == 0

        plan = service.create_plan("A1", usd("500.00"), date(2026, 5, 1), AS_OF, monthly_payment=usd("250.00"))
        service.post_payment("PAY-1", plan.id, usd("250.00"), AS_OF)
        service.post_payment("PAY-1", plan.id, usd("250.00"), AS_OF)
        assert service.verify_audit_integrity()["valid"]
        service.storage.close()

        reopened = create_service(config)
        assert reopened.get_account_state("A1")["status"] == "active"
        assert reopened.get_plan_state(plan.id)["remaining_balance"] == usd("250.00")
        assert reopened.tasks.count() == 1
        assert reopened.get_run(report.run_id).accounts_processed == 3
        reopened.storage.close()
