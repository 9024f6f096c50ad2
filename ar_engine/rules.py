"""
Collection Rule Engine Module

Rules are configuration data: a trigger condition from a closed vocabulary and
one action, evaluated in ascending execution order. Evaluation is a pure
function of account state, the latest triggering activity, the active rule set
and the as-of time; applying the resulting actions is left to ActionEmitter.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .accounts import CollectionAccount, CollectionStatus, Priority
from .activities import ActivityType, CollectionActivity
from .aging import AgingBucket
from .exceptions import RuleEvaluationError
from .logging_config import log_action
from .money import Money
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("ar_engine.rules")


class ActionType(Enum):
    """Actions a rule may emit"""
    CREATE_TASK = "create_task"
    QUEUE_LETTER = "queue_letter"
    ESCALATE = "escalate"
    WRITE_OFF = "write_off"
    REFER_TO_LEGAL = "refer_to_legal"
    RESOLVE = "resolve"

    @property
    def is_status_change(self) -> bool:
        """Status-changing actions are first-match; outreach actions are all-match"""
        return self in (ActionType.ESCALATE, ActionType.WRITE_OFF,
                        ActionType.REFER_TO_LEGAL, ActionType.RESOLVE)


@dataclass(frozen=True)
class RuleContext:
    """Everything a trigger may look at"""
    account: CollectionAccount
    latest_activity: Optional[CollectionActivity]
    as_of: datetime
    has_open_plan: bool = False


# Trigger vocabulary

class _Condition(BaseModel, ABC):
    model_config = ConfigDict(extra="forbid", frozen=True)

    @abstractmethod
    def matches(self, ctx: RuleContext) -> bool:
        pass


class BalanceAtLeast(_Condition):
    kind: Literal["balance_at_least"]
    amount: Decimal = Field(..., ge=0, description="Major units")

    def matches(self, ctx: RuleContext) -> bool:
        account = ctx.account
        return account.balance >= Money.from_decimal(self.amount, account.currency)


class BucketAtLeast(_Condition):
    kind: Literal["bucket_at_least"]
    bucket: AgingBucket
    amount: Decimal = Field(..., ge=0, description="Major units")

    def matches(self, ctx: RuleContext) -> bool:
        account = ctx.account
        threshold = Money.from_decimal(self.amount, account.currency)
        bucket_amount = account.buckets.get(self.bucket)
        # A zero threshold still requires money in the bucket
        return bucket_amount.is_positive() and bucket_amount >= threshold


class StatusIn(_Condition):
    kind: Literal["status_in"]
    statuses: List[CollectionStatus] = Field(..., min_length=1)

    def matches(self, ctx: RuleContext) -> bool:
        return ctx.account.status in self.statuses


class PriorityIn(_Condition):
    kind: Literal["priority_in"]
    priorities: List[Priority] = Field(..., min_length=1)

    def matches(self, ctx: RuleContext) -> bool:
        return ctx.account.priority in self.priorities


class DaysSinceLastActivity(_Condition):
    """True when no activity happened in the last `days` days (or ever)"""
    kind: Literal["days_since_last_activity"]
    days: int = Field(..., ge=0)

    def matches(self, ctx: RuleContext) -> bool:
        if ctx.latest_activity is None:
            return True
        elapsed = (ctx.as_of.date() - ctx.latest_activity.occurred_at.date()).days
        return elapsed >= self.days


class LastActivityIs(_Condition):
    kind: Literal["last_activity_is"]
    activity_types: List[ActivityType] = Field(..., min_length=1)
    outcomes: Optional[List[str]] = None

    def matches(self, ctx: RuleContext) -> bool:
        activity = ctx.latest_activity
        if activity is None or activity.activity_type not in self.activity_types:
            return False
        return self.outcomes is None or activity.outcome in self.outcomes


class ContactAttemptsAtLeast(_Condition):
    kind: Literal["contact_attempts_at_least"]
    count: int = Field(..., ge=0)

    def matches(self, ctx: RuleContext) -> bool:
        return ctx.account.contact_attempts >= self.count


class HasPaymentPlan(_Condition):
    """Whether the account has a pending or active payment plan"""
    kind: Literal["has_payment_plan"]
    value: bool = True

    def matches(self, ctx: RuleContext) -> bool:
        return ctx.has_open_plan == self.value


class AllOf(_Condition):
    kind: Literal["all_of"]
    conditions: List["Trigger"] = Field(..., min_length=1)

    def matches(self, ctx: RuleContext) -> bool:
        return all(condition.matches(ctx) for condition in self.conditions)


class AnyOf(_Condition):
    kind: Literal["any_of"]
    conditions: List["Trigger"] = Field(..., min_length=1)

    def matches(self, ctx: RuleContext) -> bool:
        return any(condition.matches(ctx) for condition in self.conditions)


class Not(_Condition):
    kind: Literal["not"]
    condition: "Trigger"

    def matches(self, ctx: RuleContext) -> bool:
        return not self.condition.matches(ctx)


Trigger = Annotated[
    Union[
        BalanceAtLeast, BucketAtLeast, StatusIn, PriorityIn, DaysSinceLastActivity,
        LastActivityIs, ContactAttemptsAtLeast, HasPaymentPlan, AllOf, AnyOf, Not
    ],
    Field(discriminator="kind")
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()


class RuleAction(BaseModel):
    """Action emitted when a rule matches"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: ActionType
    task_type: Optional[str] = Field(None, description="Required for create_task")
    description: str = ""
    priority: Optional[Priority] = Field(None, description="Task priority; defaults to the account priority")
    due_in_days: Optional[int] = Field(None, ge=0)
    template: Optional[str] = Field(None, description="Letter template reference; required for queue_letter")

    @model_validator(mode="after")
    def check_required_fields(self) -> 'RuleAction':
        if self.type == ActionType.CREATE_TASK and not self.task_type:
            raise ValueError("create_task requires task_type")
        if self.type == ActionType.QUEUE_LETTER and not self.template:
            raise ValueError("queue_letter requires template")
        return self


class RuleDefinition(BaseModel):
    """Parsed, validated form of a stored rule's configuration"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    trigger: Trigger
    action: RuleAction
    consecutive_cycles: int = Field(1, ge=1)


@dataclass
class CollectionRule(StorageRecord):
    """Stored rule configuration"""
    name: str
    trigger: Dict[str, Any]
    action: Dict[str, Any]
    execution_order: int
    active: bool = True
    consecutive_cycles: int = 1

    def definition(self) -> RuleDefinition:
        """
        Parse this rule's configuration

        Raises:
            RuleEvaluationError: if the configuration is malformed
        """
        try:
            return RuleDefinition.model_validate({
                "trigger": self.trigger,
                "action": self.action,
                "consecutive_cycles": self.consecutive_cycles
            })
        except ValidationError as e:
            raise RuleEvaluationError(self.id, f"invalid configuration: {e.error_count()} error(s): "
                                               f"{e.errors()[0]['msg']}") from e


@dataclass(frozen=True)
class PlannedAction:
    """An action the engine decided to emit for one account"""
    rule_id: str
    rule_name: str
    action: RuleAction
    dedup_key: str
    triggering_activity_id: Optional[str]


@dataclass
class Evaluation:
    """Result of evaluating all active rules against one account"""
    actions: List[PlannedAction] = field(default_factory=list)
    streaks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errors: List[RuleEvaluationError] = field(default_factory=list)


def dedup_key(account_id: str, rule_id: str, triggering_activity_id: Optional[str]) -> str:
    return f"{account_id}:{rule_id}:{triggering_activity_id or 'none'}"


class RuleRepository:
    """Stores collection rules; active rules are read fresh for every run"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.rules_table = "collection_rules"

    def create_rule(
        self,
        name: str,
        trigger: Dict[str, Any],
        action: Dict[str, Any],
        execution_order: int,
        now: datetime,
        active: bool = True,
        consecutive_cycles: int = 1,
        rule_id: Optional[str] = None
    ) -> CollectionRule:
        """
        Validate and store a new rule

        Raises:
            RuleEvaluationError: if the configuration is malformed
        """
        rule = CollectionRule(
            id=rule_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            trigger=trigger,
            action=action,
            execution_order=execution_order,
            active=active,
            consecutive_cycles=consecutive_cycles
        )
        rule.definition()
        self.save(rule)
        return rule

    def save(self, rule: CollectionRule) -> None:
        """Store a rule as-is, without validating its configuration"""
        self.storage.save(self.rules_table, rule.id, rule.to_dict())

    def get(self, rule_id: str) -> Optional[CollectionRule]:
        data = self.storage.load(self.rules_table, rule_id)
        if data:
            return CollectionRule.from_dict(data)
        return None

    def set_active(self, rule_id: str, active: bool, now: datetime) -> CollectionRule:
        rule = self.get(rule_id)
        if not rule:
            raise ValueError(f"Rule {rule_id} not found")
        rule.active = active
        rule.updated_at = now
        self.save(rule)
        return rule

    def list_rules(self) -> List[CollectionRule]:
        rules = [CollectionRule.from_dict(data) for data in self.storage.load_all(self.rules_table)]
        rules.sort(key=lambda r: (r.execution_order, r.id))
        return rules

    def list_active(self) -> List[CollectionRule]:
        return [rule for rule in self.list_rules() if rule.active]


class RuleEngine:
    """
    Interpreter for the rule vocabulary

    Status-changing actions are first-match across the ordered rule list;
    outreach actions (tasks, letters) fire for every matching rule.
    """

    def evaluate(self, rules: List[CollectionRule], ctx: RuleContext,
                 run_id: Optional[str] = None) -> Evaluation:
        account = ctx.account
        evaluation = Evaluation(streaks=dict(account.rule_streaks))
        triggering_id = ctx.latest_activity.id if ctx.latest_activity else None
        cycle = ctx.as_of.date().isoformat()
        status_matched = False

        for rule in sorted(rules, key=lambda r: (r.execution_order, r.id)):
            if not rule.active:
                continue

            try:
                definition = rule.definition()
                matched = definition.trigger.matches(ctx)
            except RuleEvaluationError as e:
                self._skip(evaluation, e, account.id, run_id)
                continue
            except Exception as e:
                self._skip(evaluation, RuleEvaluationError(rule.id, f"trigger failed: {e}"), account.id, run_id)
                continue

            if definition.consecutive_cycles > 1:
                matched = self._advance_streak(evaluation.streaks, rule.id, matched, cycle) \
                    >= definition.consecutive_cycles
            else:
                evaluation.streaks.pop(rule.id, None)

            if not matched:
                continue

            if definition.action.type.is_status_change:
                if status_matched:
                    continue
                status_matched = True

            evaluation.actions.append(PlannedAction(
                rule_id=rule.id,
                rule_name=rule.name,
                action=definition.action,
                dedup_key=dedup_key(account.id, rule.id, triggering_id),
                triggering_activity_id=triggering_id
            ))

        return evaluation

    @staticmethod
    def _advance_streak(streaks: Dict[str, Dict[str, Any]], rule_id: str, matched: bool, cycle: str) -> int:
        """Update a rule's consecutive-cycle count; one increment per as-of date"""
        if not matched:
            streaks.pop(rule_id, None)
            return 0

        previous = streaks.get(rule_id)
        if previous is None:
            count = 1
        elif previous["as_of"] == cycle:
            count = previous["count"]
        else:
            count = previous["count"] + 1
        streaks[rule_id] = {"count": count, "as_of": cycle}
        return count

    @staticmethod
    def _skip(evaluation: Evaluation, error: RuleEvaluationError, account_id: str,
              run_id: Optional[str]) -> None:
        evaluation.errors.append(error)
        log_action(logger, "warning", f"Skipping rule: {error}", action="rule_skipped",
                   account_id=account_id, run_id=run_id, extra={"rule_id": error.rule_id})
