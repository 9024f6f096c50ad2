"""
Collections Service

Facade wiring the engine components over one storage backend. This is the
surface the HTTP/CLI layer, the payment event feed and the letter subsystem
call into.
"""

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from .accounts import AccountLocks, AccountRepository, CollectionAccount
from .actions import ActionEmitter, LetterDispatch, LetterQueue, LetterRequest, TaskBoard, TaskResolution
from .activities import ActivityLog, ActivityType, CollectionActivity
from .audit import AuditRecorder, AuditEventType, AuditRecord
from .batch import BatchOrchestrator, CancellationToken, RunReport
from .config import EngineConfig, get_config
from .exceptions import ConcurrencyConflict, IllegalTransitionError
from .ledger import LedgerReader, StorageLedger
from .logging_config import setup_logging, log_action
from .money import Money, Currency
from .payment_plans import Installment, PaymentPlan, PaymentPlanAmortizer, PostedPayment
from .reporting import CollectionsReporter
from .rules import CollectionRule, RuleEngine, RuleRepository
from .status_machine import CollectionStatusMachine
from .storage import StorageInterface, create_storage


logger = logging.getLogger("ar_engine.service")


class CollectionsService:
    """Entry point for batch runs, payment events, collector actions and queries"""

    def __init__(
        self,
        storage: StorageInterface,
        ledger: Optional[LedgerReader] = None,
        config: Optional[EngineConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage
        self.ledger = ledger or StorageLedger(storage)
        self.locks = AccountLocks()

        self.audit = AuditRecorder(storage)
        self.accounts = AccountRepository(storage)
        self.activities = ActivityLog(storage, self.audit)
        self.status_machine = CollectionStatusMachine(self.audit, self.config)
        self.rules = RuleRepository(storage)
        self.engine = RuleEngine()
        self.tasks = TaskBoard(storage, self.audit)
        self.letters = LetterQueue(storage, self.audit)
        self.emitter = ActionEmitter(self.audit, self.activities, self.status_machine,
                                     self.tasks, self.letters, self.config)
        self.amortizer = PaymentPlanAmortizer(storage, self.audit, self.activities, self.ledger,
                                              self.config, self.locks)
        self.orchestrator = BatchOrchestrator(
            storage=storage,
            ledger=self.ledger,
            accounts=self.accounts,
            activities=self.activities,
            status_machine=self.status_machine,
            rules=self.rules,
            engine=self.engine,
            emitter=self.emitter,
            amortizer=self.amortizer,
            audit=self.audit,
            config=self.config,
            locks=self.locks
        )
        self.reporter = CollectionsReporter(self.accounts, self.activities, self.amortizer,
                                            self.tasks, self.letters)

    # Batch

    def run_batch(self, as_of: datetime, cancel_token: Optional[CancellationToken] = None) -> RunReport:
        return self.orchestrator.run(as_of, cancel_token=cancel_token)

    def get_run(self, run_id: str) -> Optional[RunReport]:
        return self.orchestrator.get_run(run_id)

    # Queries

    def get_account_state(self, account_id: str) -> Dict[str, Any]:
        """
        Balance, aging buckets, status and priority from the last evaluation

        Raises:
            ValueError: if the account has never been evaluated
        """
        snapshot = self.reporter.account_snapshot(account_id)
        if snapshot is None:
            raise ValueError(f"Account {account_id} has no collection state")
        return snapshot

    def get_plan_state(self, plan_id: str) -> Dict[str, Any]:
        """
        Raises:
            ValueError: if the plan does not exist
        """
        plan = self.amortizer.get_plan(plan_id)
        if not plan:
            raise ValueError(f"Payment plan {plan_id} not found")
        return {
            "plan_id": plan.id,
            "account_id": plan.account_id,
            "remaining_balance": plan.remaining_balance,
            "payments_remaining": plan.payments_remaining,
            "next_payment_date": plan.next_payment_date,
            "monthly_payment": plan.monthly_payment,
            "missed_payments": plan.missed_payments,
            "unapplied_credit": plan.unapplied_credit,
            "status": plan.status.value
        }

    def get_account_history(self, account_id: str, start_time: Optional[datetime] = None,
                            end_time: Optional[datetime] = None,
                            event_types: Optional[List[AuditEventType]] = None) -> List[AuditRecord]:
        return self.audit.get_account_history(account_id, start_time, end_time, event_types)

    def get_activities(self, account_id: str) -> List[CollectionActivity]:
        return self.activities.history(account_id)

    def collections_summary(self, as_of: datetime, currency: Optional[Currency] = None) -> Dict[str, Any]:
        return self.reporter.collections_summary(as_of, currency or Currency.from_code(self.config.currency))

    def verify_audit_integrity(self) -> Dict[str, Any]:
        return self.audit.verify_integrity()

    # Rules

    def create_rule(self, name: str, trigger: Dict[str, Any], action: Dict[str, Any], execution_order: int,
                    now: datetime, active: bool = True, consecutive_cycles: int = 1,
                    rule_id: Optional[str] = None) -> CollectionRule:
        return self.rules.create_rule(name, trigger, action, execution_order, now,
                                      active=active, consecutive_cycles=consecutive_cycles, rule_id=rule_id)

    def set_rule_active(self, rule_id: str, active: bool, now: datetime) -> CollectionRule:
        return self.rules.set_active(rule_id, active, now)

    # Payment plans

    def create_plan(self, account_id: str, total_amount: Money, first_payment_date: date, now: datetime,
                    monthly_payment: Optional[Money] = None, term: Optional[int] = None,
                    auto_pay: bool = False) -> PaymentPlan:
        return self.amortizer.create_plan(account_id, total_amount, first_payment_date, now,
                                          monthly_payment=monthly_payment, term=term, auto_pay=auto_pay)

    def post_payment(self, payment_id: str, plan_id: str, amount: Money, posted_at: datetime) -> PostedPayment:
        """Consume one event from the posted-payment feed"""
        return self.amortizer.post_payment(payment_id, plan_id, amount, posted_at)

    def check_missed_payments(self, as_of: datetime) -> Dict[str, int]:
        return self.amortizer.check_missed_payments(as_of)

    def amend_plan(self, plan_id: str, now: datetime, monthly_payment: Optional[Money] = None,
                   term: Optional[int] = None, auto_pay: Optional[bool] = None,
                   next_payment_date: Optional[date] = None) -> PaymentPlan:
        return self.amortizer.amend_plan(plan_id, now, monthly_payment=monthly_payment, term=term,
                                         auto_pay=auto_pay, next_payment_date=next_payment_date)

    def cancel_plan(self, plan_id: str, now: datetime, reason: str = "") -> PaymentPlan:
        return self.amortizer.cancel_plan(plan_id, now, reason)

    def get_schedule(self, plan_id: str) -> List[Installment]:
        return self.amortizer.get_schedule(plan_id)

    # Collector actions

    def record_activity(
        self,
        account_id: str,
        activity_type: ActivityType,
        occurred_at: datetime,
        outcome: Optional[str] = None,
        description: str = "",
        next_action: Optional[str] = None,
        next_action_date: Optional[date] = None,
        performed_by: str = "system"
    ) -> CollectionActivity:
        """
        Log a collector activity; calls and letters count as contact attempts
        """
        if activity_type == ActivityType.RULE_ACTION:
            raise ValueError("Rule actions are recorded by the rule engine")

        def apply(account: CollectionAccount) -> CollectionActivity:
            activity = self.activities.append(
                account_id=account_id,
                activity_type=activity_type,
                occurred_at=occurred_at,
                outcome=outcome,
                description=description,
                next_action=next_action,
                next_action_date=next_action_date,
                performed_by=performed_by,
                component="collector"
            )
            if activity_type.is_contact:
                account.contact_attempts += 1
            if account.last_activity_at is None or occurred_at > account.last_activity_at:
                account.last_activity_at = occurred_at
            return activity

        return self._update_account(account_id, occurred_at, apply, create=True)

    def assign_collector(self, account_id: str, collector_id: str, now: datetime) -> CollectionAccount:
        def apply(account: CollectionAccount) -> CollectionAccount:
            previous = account.assigned_collector
            account.assigned_collector = collector_id
            self.audit.record(
                event_type=AuditEventType.COLLECTOR_ASSIGNED,
                component="collector",
                entity_type="collection_account",
                entity_id=account_id,
                occurred_at=now,
                account_id=account_id,
                before={"assigned_collector": previous},
                after={"assigned_collector": collector_id}
            )
            return account

        return self._update_account(account_id, now, apply)

    def settle_account(self, account_id: str, now: datetime, reference: Optional[str] = None,
                       performed_by: str = "system") -> CollectionAccount:
        """
        Record a settlement and resolve the account

        Raises:
            IllegalTransitionError: if the account cannot move to resolved
        """
        def apply(account: CollectionAccount) -> CollectionAccount:
            self.status_machine.settle(account, now, correlation_id=reference)
            self.activities.append(
                account_id=account_id,
                activity_type=ActivityType.SETTLEMENT,
                occurred_at=now,
                outcome="settled",
                performed_by=performed_by,
                related_id=reference,
                correlation_id=reference,
                component="collector"
            )
            account.last_activity_at = now
            return account

        try:
            return self._update_account(account_id, now, apply)
        except IllegalTransitionError as e:
            self.status_machine.record_rejection(e, now, correlation_id=reference)
            raise

    def resolve_task(self, task_id: str, resolved_by: str, resolution: str, now: datetime) -> TaskResolution:
        task = self.tasks.get(task_id)
        if not task:
            raise ValueError(f"Task {task_id} not found")
        with self.locks.hold(task.account_id):
            with self.storage.atomic():
                return self.tasks.resolve(task_id, resolved_by, resolution, now)

    # Letter queue

    def pending_letters(self) -> List[LetterRequest]:
        return self.letters.pending()

    def acknowledge_letter(self, letter_id: str, now: datetime, reference: Optional[str] = None) -> LetterDispatch:
        letter = self.letters.get(letter_id)
        if not letter:
            raise ValueError(f"Letter {letter_id} not found")
        with self.locks.hold(letter.account_id):
            with self.storage.atomic():
                return self.letters.acknowledge(letter_id, now, reference)

    def _update_account(self, account_id: str, now: datetime, apply: Callable[[CollectionAccount], Any],
                        create: bool = False) -> Any:
        """Read-modify-write of one account under its lock; a version conflict is retried once"""
        with self.locks.hold(account_id):
            for attempt in (1, 2):
                try:
                    with self.storage.atomic():
                        account = self.accounts.get(account_id)
                        if account is None:
                            if not create:
                                raise ValueError(f"Account {account_id} has no collection state")
                            currency = self.ledger.get_balance(account_id).balance.currency
                            account = self.accounts.get_or_new(account_id, currency, now)
                        result = apply(account)
                        self.accounts.save(account, now)
                        return result
                except ConcurrencyConflict as e:
                    if attempt == 2:
                        raise
                    log_action(logger, "warning", f"Version conflict, retrying: {e}",
                               action="account_update_retry", account_id=account_id)


def create_service(config: Optional[EngineConfig] = None, ledger: Optional[LedgerReader] = None) -> CollectionsService:
    """Build a service from configuration, with logging installed"""
    config = config or get_config()
    setup_logging(config.log_level, config.log_format)
    storage = create_storage(config.database_url)
    return CollectionsService(storage, ledger=ledger, config=config)
