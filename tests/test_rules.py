"""
Tests for the rule vocabulary, repository and interpreter
"""

import inspect

import pytest
from datetime import datetime, timezone, timedelta

from ar_engine.accounts import CollectionAccount, CollectionStatus, Priority
from ar_engine.activities import ActivityType, CollectionActivity
from ar_engine.aging import AgingBuckets
from ar_engine.exceptions import RuleEvaluationError
from ar_engine.money import Money, Currency
from ar_engine.rules import (
    ActionType, CollectionRule, RuleContext, RuleDefinition, RuleEngine, RuleRepository, _Condition, dedup_key
)
from ar_engine.storage import InMemoryStorage


AS_OF = datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)


def usd(amount: str) -> Money:
    return Money.from_decimal(amount, Currency.USD)


def make_account(d91="0", d31="0", status=CollectionStatus.ACTIVE, contact_attempts=0) -> CollectionAccount:
    buckets = AgingBuckets(usd("0"), usd(d31), usd("0"), usd(d91))
    return CollectionAccount(
        id="A1", created_at=AS_OF, updated_at=AS_OF,
        balance=buckets.total(), buckets=buckets, status=status,
        contact_attempts=contact_attempts
    )


def make_activity(activity_type=ActivityType.CALL, outcome="no_answer", days_ago=0, activity_id="ACT1"):
    occurred = AS_OF - timedelta(days=days_ago)
    return CollectionActivity(
        id=activity_id, created_at=occurred, updated_at=occurred, account_id="A1",
        activity_type=activity_type, occurred_at=occurred, sequence=1, outcome=outcome
    )


def make_rule(rule_id, trigger, action, order=10, active=True, cycles=1) -> CollectionRule:
    return CollectionRule(
        id=rule_id, created_at=AS_OF, updated_at=AS_OF, name=f"rule {rule_id}",
        trigger=trigger, action=action, execution_order=order, active=active,
        consecutive_cycles=cycles
    )


TASK = {"type": "create_task", "task_type": "call_patient"}
LETTER = {"type": "queue_letter", "template": "reminder_1"}


class TestTriggers:
    """Test the closed trigger vocabulary"""

    def matches(self, trigger, account=None, activity=None, has_open_plan=False):
        definition = RuleDefinition.model_validate({"trigger": trigger, "action": TASK})
        ctx = RuleContext(account or make_account(), activity, AS_OF, has_open_plan)
        return definition.trigger.matches(ctx)

    def test_balance_and_bucket(self):
        account = make_account(d91="600.00")
        assert self.matches({"kind": "balance_at_least", "amount": "600.00"}, account)
        assert not self.matches({"kind": "balance_at_least", "amount": "600.01"}, account)
        assert self.matches({"kind": "bucket_at_least", "bucket": "91_plus", "amount": "500"}, account)
        assert not self.matches({"kind": "bucket_at_least", "bucket": "31_60", "amount": "0"}, account)

    def test_status_and_priority(self):
        account = make_account()
        assert self.matches({"kind": "status_in", "statuses": ["new", "active"]}, account)
        assert not self.matches({"kind": "priority_in", "priorities": ["high"]}, account)

    def test_activity_conditions(self):
        old_call = make_activity(days_ago=10)
        assert self.matches({"kind": "days_since_last_activity", "days": 7}, activity=old_call)
        assert not self.matches({"kind": "days_since_last_activity", "days": 14}, activity=old_call)
        assert self.matches({"kind": "days_since_last_activity", "days": 14}, activity=None)

        assert self.matches({"kind": "last_activity_is", "activity_types": ["call"]}, activity=old_call)
        assert not self.matches({"kind": "last_activity_is", "activity_types": ["call"],
                                 "outcomes": ["promise_to_pay"]}, activity=old_call)
        assert not self.matches({"kind": "last_activity_is", "activity_types": ["call"]}, activity=None)

    def test_contacts_and_plans(self):
        account = make_account(contact_attempts=3)
        assert self.matches({"kind": "contact_attempts_at_least", "count": 3}, account)
        assert self.matches({"kind": "has_payment_plan", "value": False}, account)
        assert self.matches({"kind": "has_payment_plan"}, account, has_open_plan=True)

    def test_combinators(self):
        account = make_account(d91="600.00")
        trigger = {
            "kind": "all_of",
            "conditions": [
                {"kind": "bucket_at_least", "bucket": "91_plus", "amount": "100"},
                {"kind": "not", "condition": {"kind": "has_payment_plan"}},
                {"kind": "any_of", "conditions": [
                    {"kind": "priority_in", "priorities": ["high"]},
                    {"kind": "status_in", "statuses": ["active"]}
                ]}
            ]
        }
        assert self.matches(trigger, account)
        assert not self.matches(trigger, account, has_open_plan=True)


class TestRuleDefinition:
    """Test validation of rule configuration"""

    def test_unknown_trigger_kind_rejected(self):
        rule = make_rule("R1", {"kind": "moon_phase"}, TASK)
        with pytest.raises(RuleEvaluationError) as exc_info:
            rule.definition()
        assert exc_info.value.rule_id == "R1"

    def test_action_requires_its_fields(self):
        with pytest.raises(RuleEvaluationError):
            make_rule("R1", {"kind": "status_in", "statuses": ["active"]}, {"type": "create_task"}).definition()
        with pytest.raises(RuleEvaluationError):
            make_rule("R2", {"kind": "status_in", "statuses": ["active"]}, {"type": "queue_letter"}).definition()

    def test_extra_fields_rejected(self):
        rule = make_rule("R1", {"kind": "contact_attempts_at_least", "count": 1, "typo": True}, TASK)
        with pytest.raises(RuleEvaluationError):
            rule.definition()

    def test_action_categories(self):
        assert ActionType.ESCALATE.is_status_change
        assert ActionType.RESOLVE.is_status_change
        assert not ActionType.CREATE_TASK.is_status_change
        assert not ActionType.QUEUE_LETTER.is_status_change

    def test_trigger_base_is_abstract(self):
        assert inspect.isabstract(_Condition)
        with pytest.raises(TypeError):
            _Condition()

        kinds = _Condition.__subclasses__()
        assert len(kinds) == 11
        assert not any(inspect.isabstract(kind) for kind in kinds)


class TestRuleRepository:
    """Test rule storage"""

    def setup_method(self):
        self.repository = RuleRepository(InMemoryStorage())

    def test_create_validates(self):
        with pytest.raises(RuleEvaluationError):
            self.repository.create_rule("bad", {"kind": "nope"}, TASK, 1, AS_OF)
        assert self.repository.list_rules() == []

    def test_active_rules_in_execution_order(self):
        trigger = {"kind": "status_in", "statuses": ["active"]}
        self.repository.create_rule("third", trigger, TASK, 30, AS_OF, rule_id="R3")
        self.repository.create_rule("first", trigger, TASK, 10, AS_OF, rule_id="R1")
        self.repository.create_rule("second", trigger, TASK, 20, AS_OF, rule_id="R2")
        self.repository.set_active("R2", False, AS_OF)

        assert [r.id for r in self.repository.list_rules()] == ["R1", "R2", "R3"]
        assert [r.id for r in self.repository.list_active()] == ["R1", "R3"]

    def test_set_active_unknown_rule(self):
        with pytest.raises(ValueError):
            self.repository.set_active("missing", True, AS_OF)


class TestRuleEngine:
    """Test rule interpretation"""

    def setup_method(self):
        self.engine = RuleEngine()
        self.account = make_account(d91="600.00")
        self.ctx = RuleContext(self.account, make_activity(), AS_OF)

    def test_outreach_rules_all_match(self):
        rules = [
            make_rule("R1", {"kind": "status_in", "statuses": ["active"]}, TASK, order=1),
            make_rule("R2", {"kind": "balance_at_least", "amount": "100"}, LETTER, order=2),
        ]
        evaluation = self.engine.evaluate(rules, self.ctx)

        assert [a.rule_id for a in evaluation.actions] == ["R1", "R2"]
        assert evaluation.actions[0].dedup_key == "A1:R1:ACT1"
        assert evaluation.actions[0].triggering_activity_id == "ACT1"

    def test_status_rules_first_match(self):
        rules = [
            make_rule("R2", {"kind": "balance_at_least", "amount": "100"}, {"type": "refer_to_legal"}, order=2),
            make_rule("R1", {"kind": "balance_at_least", "amount": "100"}, {"type": "escalate"}, order=1),
            make_rule("R3", {"kind": "status_in", "statuses": ["active"]}, TASK, order=3),
        ]
        evaluation = self.engine.evaluate(rules, self.ctx)

        assert [(a.rule_id, a.action.type) for a in evaluation.actions] == [
            ("R1", ActionType.ESCALATE),
            ("R3", ActionType.CREATE_TASK),
        ]

    def test_ties_broken_by_rule_id(self):
        trigger = {"kind": "status_in", "statuses": ["active"]}
        rules = [make_rule("B", trigger, TASK, order=5), make_rule("A", trigger, TASK, order=5)]

        assert [a.rule_id for a in self.engine.evaluate(rules, self.ctx).actions] == ["A", "B"]

    def test_inactive_rules_ignored(self):
        rules = [make_rule("R1", {"kind": "status_in", "statuses": ["active"]}, TASK, active=False)]
        assert self.engine.evaluate(rules, self.ctx).actions == []

    def test_malformed_rule_skipped_others_evaluated(self):
        rules = [
            make_rule("BAD", {"kind": "balance_at_least"}, TASK, order=1),
            make_rule("GOOD", {"kind": "status_in", "statuses": ["active"]}, TASK, order=2),
        ]
        evaluation = self.engine.evaluate(rules, self.ctx)

        assert [a.rule_id for a in evaluation.actions] == ["GOOD"]
        assert [e.rule_id for e in evaluation.errors] == ["BAD"]

    def test_trigger_that_raises_is_skipped(self, monkeypatch):
        from ar_engine import rules as rules_module

        def explode(self, ctx):
            raise ZeroDivisionError("division by zero")

        monkeypatch.setattr(rules_module.ContactAttemptsAtLeast, "matches", explode)
        rules = [
            make_rule("BOOM", {"kind": "contact_attempts_at_least", "count": 1}, TASK, order=1),
            make_rule("OK", {"kind": "status_in", "statuses": ["active"]}, LETTER, order=2),
        ]
        evaluation = self.engine.evaluate(rules, self.ctx)

        assert [a.rule_id for a in evaluation.actions] == ["OK"]
        assert evaluation.errors[0].rule_id == "BOOM"
        assert "division by zero" in str(evaluation.errors[0])

    def test_deterministic(self):
        rules = [
            make_rule("R1", {"kind": "status_in", "statuses": ["active"]}, TASK, order=1),
            make_rule("R2", {"kind": "balance_at_least", "amount": "100"}, {"type": "escalate"}, order=2),
        ]
        first = self.engine.evaluate(rules, self.ctx)
        second = self.engine.evaluate(list(reversed(rules)), self.ctx)

        assert first.actions == second.actions

    def test_no_activity_uses_none_token(self):
        ctx = RuleContext(self.account, None, AS_OF)
        rules = [make_rule("R1", {"kind": "status_in", "statuses": ["active"]}, TASK)]

        assert self.engine.evaluate(rules, ctx).actions[0].dedup_key == "A1:R1:none"
        assert dedup_key("A1", "R1", None) == "A1:R1:none"


class TestConsecutiveCycles:
    """Test rules that must hold for several evaluation cycles"""

    def setup_method(self):
        self.engine = RuleEngine()
        self.rule = make_rule("WO", {"kind": "bucket_at_least", "bucket": "91_plus", "amount": "500"},
                              {"type": "write_off"}, cycles=3)

    def evaluate(self, account, as_of):
        evaluation = self.engine.evaluate([self.rule], RuleContext(account, None, as_of))
        account.rule_streaks = evaluation.streaks
        return evaluation

    def test_fires_on_third_consecutive_cycle(self):
        account = make_account(d91="600.00")

        assert self.evaluate(account, AS_OF).actions == []
        assert self.evaluate(account, AS_OF + timedelta(days=1)).actions == []
        assert len(self.evaluate(account, AS_OF + timedelta(days=2)).actions) == 1
        assert account.rule_streaks["WO"]["count"] == 3

    def test_same_day_rerun_does_not_advance(self):
        account = make_account(d91="600.00")

        self.evaluate(account, AS_OF)
        self.evaluate(account, AS_OF + timedelta(hours=1))
        assert account.rule_streaks["WO"] == {"count": 1, "as_of": "2026-03-31"}

    def test_streak_resets_when_trigger_fails(self):
        account = make_account(d91="600.00")
        self.evaluate(account, AS_OF)
        self.evaluate(account, AS_OF + timedelta(days=1))

        account.buckets = AgingBuckets.empty(Currency.USD)
        self.evaluate(account, AS_OF + timedelta(days=2))
        assert "WO" not in account.rule_streaks

        account.buckets = make_account(d91="600.00").buckets
        assert self.evaluate(account, AS_OF + timedelta(days=3)).actions == []
        assert account.rule_streaks["WO"]["count"] == 1
