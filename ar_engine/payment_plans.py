"""
Payment Plan Amortizer Module

Maintains an amortization ledger per enrolled plan and applies posted payments
that may arrive late, twice, or out of order. All amounts are integer minor
units; the final installment absorbs rounding so a schedule always sums to the
amount it amortizes.

Schedule position is derived from the cumulative amount paid rather than from
posting order: installments covered is the largest k whose cumulative
scheduled amount is no more than what has been paid.
"""

import calendar
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, date, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple
import uuid

from .accounts import AccountLocks
from .activities import ActivityLog, ActivityType
from .audit import AuditRecorder, AuditEventType
from .config import EngineConfig, get_config
from .exceptions import ConcurrencyConflict, PaymentPlanError
from .ledger import LedgerReader
from .logging_config import log_action
from .money import Money, Currency
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("ar_engine.plans")


class PlanStatus(Enum):
    """Payment plan lifecycle"""
    PENDING = "pending"        # Enrolled, no payment posted yet
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    CANCELED = "canceled"

    @property
    def is_open(self) -> bool:
        return self in (PlanStatus.PENDING, PlanStatus.ACTIVE)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def amortize(total: Money, monthly_payment: Optional[Money], term: Optional[int],
             max_term: int) -> Tuple[Money, int, Money]:
    """
    Compute (monthly_payment, term, final_payment) for a total

    Exactly one of monthly_payment and term must be given. The final installment
    is total - monthly_payment * (term - 1).

    Raises:
        PaymentPlanError: on missing, conflicting or out-of-range terms
    """
    if (monthly_payment is None) == (term is None):
        raise PaymentPlanError("Specify exactly one of monthly_payment or term")
    if not total.is_positive():
        raise PaymentPlanError("Plan amount must be positive")

    if monthly_payment is not None:
        if monthly_payment.currency != total.currency:
            raise PaymentPlanError("Monthly payment currency does not match plan currency")
        if not monthly_payment.is_positive():
            raise PaymentPlanError("Monthly payment must be positive")
        monthly_minor = min(monthly_payment.minor, total.minor)
        term = -(-total.minor // monthly_minor)
    else:
        if term <= 0:
            raise PaymentPlanError("Term must be at least one month")
        monthly_minor = total.minor // term
        if monthly_minor == 0:
            raise PaymentPlanError(f"Term of {term} months is too long for {total.to_string()}")

    if term > max_term:
        raise PaymentPlanError(f"Term of {term} months exceeds the maximum of {max_term}")

    final_minor = total.minor - monthly_minor * (term - 1)
    return Money(monthly_minor, total.currency), term, Money(final_minor, total.currency)


@dataclass
class PaymentPlan(StorageRecord):
    """Installment agreement for an account balance"""
    account_id: str
    currency: Currency
    total_amount: Money
    monthly_payment: Money
    final_payment: Money
    term: int                        # Installments in the current schedule
    schedule_start: date             # Due date of the current schedule's first installment
    schedule_base_paid: Money        # Amount paid before the current schedule began
    amount_paid: Money
    remaining_balance: Money
    payments_remaining: int
    next_payment_date: Optional[date]
    auto_pay: bool = False
    status: PlanStatus = PlanStatus.PENDING
    missed_payments: int = 0         # Consecutive elapsed, unpaid due dates
    unapplied_credit: Money = None   # Posted beyond the plan total
    version: int = 0

    def __post_init__(self):
        if self.unapplied_credit is None:
            self.unapplied_credit = Money.zero(self.currency)

    @property
    def schedule_total(self) -> Money:
        return self.total_amount - self.schedule_base_paid

    def scheduled_through(self, installments: int) -> Money:
        """Cumulative amount due after the given number of installments"""
        if installments >= self.term:
            return self.schedule_total
        return self.monthly_payment * installments

    def installments_covered(self) -> int:
        paid = (self.amount_paid - self.schedule_base_paid).minor
        if paid >= self.schedule_total.minor:
            return self.term
        return min(paid // self.monthly_payment.minor, self.term - 1)

    def refresh_schedule_position(self) -> None:
        covered = self.installments_covered()
        self.payments_remaining = self.term - covered
        self.next_payment_date = (add_months(self.schedule_start, covered)
                                  if self.payments_remaining > 0 else None)


@dataclass
class PostedPayment(StorageRecord):
    """A payment event applied to a plan; id is the billing payment id"""
    plan_id: str
    account_id: str
    amount: Money
    applied: Money
    unapplied: Money
    posted_at: datetime


@dataclass(frozen=True)
class Installment:
    """One row of an amortization schedule"""
    number: int
    due_date: date
    amount: Money
    paid: Money

    @property
    def is_paid(self) -> bool:
        return self.paid == self.amount


class PaymentPlanAmortizer:
    """
    Creates plans, applies posted payments and tracks missed installments
    """

    component = "payment_plan_amortizer"

    def __init__(
        self,
        storage: StorageInterface,
        audit: AuditRecorder,
        activities: ActivityLog,
        ledger: LedgerReader,
        config: Optional[EngineConfig] = None,
        locks: Optional[AccountLocks] = None
    ):
        self.storage = storage
        self.audit = audit
        self.activities = activities
        self.ledger = ledger
        self.config = config or get_config()
        self.locks = locks
        self.plans_table = "payment_plans"
        self.payments_table = "plan_payments"

    def _hold(self, account_id: str):
        if self.locks is None:
            return nullcontext()
        return self.locks.hold(account_id)

    def create_plan(
        self,
        account_id: str,
        total_amount: Money,
        first_payment_date: date,
        now: datetime,
        monthly_payment: Optional[Money] = None,
        term: Optional[int] = None,
        auto_pay: bool = False,
        plan_id: Optional[str] = None
    ) -> PaymentPlan:
        """
        Enroll an account in a payment plan

        Args:
            account_id: Billing account
            total_amount: Amount to amortize; may not exceed the ledger balance
            first_payment_date: Due date of the first installment
            now: Enrollment time
            monthly_payment: Target installment (term is derived)
            term: Target number of months (installment is derived)
            auto_pay: Whether installments are collected automatically
            plan_id: Optional explicit id

        Returns:
            The new plan in PENDING status

        Raises:
            PaymentPlanError: on invalid terms or when the account already has an open plan
        """
        monthly, plan_term, final = amortize(total_amount, monthly_payment, term,
                                             self.config.plan_max_term_months)

        balance = self.ledger.get_balance(account_id).balance
        if balance.currency != total_amount.currency:
            raise PaymentPlanError(f"Plan currency {total_amount.currency.code} does not match "
                                   f"account currency {balance.currency.code}")
        if total_amount > balance:
            raise PaymentPlanError(f"Plan amount {total_amount.to_string()} exceeds account "
                                   f"balance {balance.to_string()}")

        with self._hold(account_id):
            with self.storage.atomic():
                if self.has_open_plan(account_id):
                    raise PaymentPlanError(f"Account {account_id} already has an open payment plan")

                zero = Money.zero(total_amount.currency)
                plan = PaymentPlan(
                    id=plan_id or str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    account_id=account_id,
                    currency=total_amount.currency,
                    total_amount=total_amount,
                    monthly_payment=monthly,
                    final_payment=final,
                    term=plan_term,
                    schedule_start=first_payment_date,
                    schedule_base_paid=zero,
                    amount_paid=zero,
                    remaining_balance=total_amount,
                    payments_remaining=plan_term,
                    next_payment_date=first_payment_date,
                    auto_pay=auto_pay
                )
                self._save_plan(plan, now)

                self.audit.record(
                    event_type=AuditEventType.PLAN_CREATED,
                    component=self.component,
                    entity_type="payment_plan",
                    entity_id=plan.id,
                    occurred_at=now,
                    account_id=account_id,
                    after=self._plan_summary(plan)
                )
                self.activities.append(
                    account_id=account_id,
                    activity_type=ActivityType.PLAN_SETUP,
                    occurred_at=now,
                    outcome="enrolled",
                    description=f"{plan_term} payments of {monthly.to_string()}",
                    next_action="payment_due",
                    next_action_date=first_payment_date,
                    related_id=plan.id,
                    component=self.component
                )

        log_action(logger, "info", f"Payment plan {plan.id} created", action="plan_created",
                   account_id=account_id, extra={"term": plan_term, "monthly_payment": monthly.to_string()})
        return plan

    def post_payment(self, payment_id: str, plan_id: str, amount: Money, posted_at: datetime) -> PostedPayment:
        """
        Apply a posted-payment event to a plan

        A payment id that was already applied is acknowledged without effect.
        A version conflict is retried once with a fresh read.

        Raises:
            PaymentPlanError: unknown plan, closed plan, bad amount or currency
            ConcurrencyConflict: if the plan changed underneath twice in a row
        """
        if not amount.is_positive():
            raise PaymentPlanError("Payment amount must be positive")

        plan = self._require_plan(plan_id)
        with self._hold(plan.account_id):
            for attempt in (1, 2):
                try:
                    with self.storage.atomic():
                        return self._apply_payment(payment_id, plan_id, amount, posted_at)
                except ConcurrencyConflict:
                    if attempt == 2:
                        raise
                    log_action(logger, "warning", f"Version conflict posting {payment_id}, retrying",
                               action="plan_payment_retry", account_id=plan.account_id,
                               correlation_id=payment_id)

    def _apply_payment(self, payment_id: str, plan_id: str, amount: Money, posted_at: datetime) -> PostedPayment:
        existing = self.storage.load(self.payments_table, payment_id)
        if existing:
            log_action(logger, "info", f"Payment {payment_id} already applied", action="duplicate_payment",
                       correlation_id=payment_id)
            return self._payment_from_dict(existing)

        plan = self._require_plan(plan_id)
        if not plan.status.is_open:
            raise PaymentPlanError(f"Payment plan {plan_id} is {plan.status.value}")
        if amount.currency != plan.currency:
            raise PaymentPlanError(f"Payment currency {amount.currency.code} does not match plan")

        before = self._plan_summary(plan)
        applied = min(amount, plan.remaining_balance)
        unapplied = amount - applied

        plan.amount_paid = plan.amount_paid + applied
        plan.remaining_balance = plan.total_amount - plan.amount_paid
        plan.unapplied_credit = plan.unapplied_credit + unapplied
        plan.refresh_schedule_position()
        plan.missed_payments = len(self._missed_due_dates(plan, posted_at.date()))

        if plan.status == PlanStatus.PENDING:
            plan.status = PlanStatus.ACTIVE
        completed = plan.remaining_balance.is_zero()
        if completed:
            plan.status = PlanStatus.COMPLETED
            plan.missed_payments = 0

        payment = PostedPayment(
            id=payment_id,
            created_at=posted_at,
            updated_at=posted_at,
            plan_id=plan_id,
            account_id=plan.account_id,
            amount=amount,
            applied=applied,
            unapplied=unapplied,
            posted_at=posted_at
        )
        self.storage.save(self.payments_table, payment_id, self._payment_to_dict(payment))
        self._save_plan(plan, posted_at)

        self.audit.record(
            event_type=AuditEventType.PLAN_PAYMENT_APPLIED,
            component=self.component,
            entity_type="payment_plan",
            entity_id=plan_id,
            occurred_at=posted_at,
            account_id=plan.account_id,
            correlation_id=payment_id,
            before=before,
            after=dict(self._plan_summary(plan), applied=applied, unapplied=unapplied)
        )
        if completed:
            self.audit.record(
                event_type=AuditEventType.PLAN_COMPLETED,
                component=self.component,
                entity_type="payment_plan",
                entity_id=plan_id,
                occurred_at=posted_at,
                account_id=plan.account_id,
                correlation_id=payment_id,
                after={"status": plan.status}
            )
        self.activities.append(
            account_id=plan.account_id,
            activity_type=ActivityType.PAYMENT,
            occurred_at=posted_at,
            outcome="plan_completed" if completed else "applied",
            description=f"Plan payment {amount.to_string()}",
            related_id=payment_id,
            correlation_id=payment_id,
            component=self.component
        )

        log_action(logger, "info", f"Applied {applied.to_string()} to plan {plan_id}",
                   action="plan_payment_applied", account_id=plan.account_id, correlation_id=payment_id,
                   extra={"unapplied": unapplied.to_string(), "remaining": plan.remaining_balance.to_string()})
        return payment

    def check_missed_payments(self, as_of: datetime) -> Dict[str, int]:
        """
        Record a delinquency activity for every elapsed, unpaid due date

        Each missed due date is recorded once. A plan defaults when its
        consecutive misses reach the configured threshold.

        Returns:
            Counts of plans checked, misses recorded and plans defaulted
        """
        results = {"plans_checked": 0, "misses_recorded": 0, "plans_defaulted": 0}

        for plan in self.get_plans():
            if not plan.status.is_open:
                continue
            results["plans_checked"] += 1

            with self._hold(plan.account_id):
                with self.storage.atomic():
                    recorded, defaulted = self._check_plan(plan.id, as_of)
            results["misses_recorded"] += recorded
            results["plans_defaulted"] += int(defaulted)

        return results

    def _check_plan(self, plan_id: str, as_of: datetime) -> Tuple[int, bool]:
        plan = self._require_plan(plan_id)
        if not plan.status.is_open:
            return 0, False

        missed = self._missed_due_dates(plan, as_of.date())
        recorded = 0
        for due_date in missed:
            key = f"plan:{plan.id}:missed:{due_date.isoformat()}"
            if self.activities.find_by_dedup_key(key):
                continue
            self.activities.append(
                account_id=plan.account_id,
                activity_type=ActivityType.DELINQUENCY,
                occurred_at=as_of,
                outcome="missed_installment",
                description=f"Installment due {due_date.isoformat()} not paid",
                related_id=plan.id,
                dedup_key=key,
                component=self.component
            )
            self.audit.record(
                event_type=AuditEventType.PLAN_PAYMENT_MISSED,
                component=self.component,
                entity_type="payment_plan",
                entity_id=plan.id,
                occurred_at=as_of,
                account_id=plan.account_id,
                after={"due_date": due_date, "consecutive_misses": missed.index(due_date) + 1}
            )
            recorded += 1

        defaulted = len(missed) >= self.config.plan_default_after_misses
        if len(missed) == plan.missed_payments and not defaulted:
            return recorded, False

        plan.missed_payments = len(missed)
        if defaulted:
            plan.status = PlanStatus.DEFAULTED
            self.audit.record(
                event_type=AuditEventType.PLAN_DEFAULTED,
                component=self.component,
                entity_type="payment_plan",
                entity_id=plan.id,
                occurred_at=as_of,
                account_id=plan.account_id,
                after={"status": plan.status, "missed_payments": plan.missed_payments}
            )
            log_action(logger, "warning", f"Payment plan {plan.id} defaulted after {len(missed)} misses",
                       action="plan_defaulted", account_id=plan.account_id)
        self._save_plan(plan, as_of)
        return recorded, defaulted

    def _missed_due_dates(self, plan: PaymentPlan, as_of_date: date) -> List[date]:
        if plan.auto_pay or plan.payments_remaining == 0:
            return []
        grace = timedelta(days=self.config.plan_grace_days)
        missed = []
        for installment in range(plan.term - plan.payments_remaining, plan.term):
            due_date = add_months(plan.schedule_start, installment)
            if due_date + grace >= as_of_date:
                break
            missed.append(due_date)
        return missed

    def amend_plan(
        self,
        plan_id: str,
        now: datetime,
        monthly_payment: Optional[Money] = None,
        term: Optional[int] = None,
        auto_pay: Optional[bool] = None,
        next_payment_date: Optional[date] = None
    ) -> PaymentPlan:
        """
        Edit an open plan

        A new monthly payment, term or next payment date re-amortizes the
        remaining balance into a fresh schedule starting at the next due date.

        Raises:
            PaymentPlanError: unknown or closed plan, or invalid new terms
        """
        if monthly_payment is not None and term is not None:
            raise PaymentPlanError("Specify at most one of monthly_payment or term")

        plan = self._require_plan(plan_id)
        with self._hold(plan.account_id):
            with self.storage.atomic():
                plan = self._require_plan(plan_id)
                if not plan.status.is_open:
                    raise PaymentPlanError(f"Payment plan {plan_id} is {plan.status.value}")
                before = self._plan_summary(plan)

                if monthly_payment is not None or term is not None or next_payment_date is not None:
                    if monthly_payment is None and term is None:
                        monthly_payment = plan.monthly_payment
                    monthly, new_term, final = amortize(plan.remaining_balance, monthly_payment, term,
                                                        self.config.plan_max_term_months)
                    plan.schedule_start = next_payment_date or plan.next_payment_date
                    plan.schedule_base_paid = plan.amount_paid
                    plan.monthly_payment = monthly
                    plan.term = new_term
                    plan.final_payment = final
                    plan.refresh_schedule_position()
                    plan.missed_payments = 0

                if auto_pay is not None:
                    plan.auto_pay = auto_pay

                self._save_plan(plan, now)
                self.audit.record(
                    event_type=AuditEventType.PLAN_AMENDED,
                    component=self.component,
                    entity_type="payment_plan",
                    entity_id=plan.id,
                    occurred_at=now,
                    account_id=plan.account_id,
                    before=before,
                    after=self._plan_summary(plan)
                )
        return plan

    def cancel_plan(self, plan_id: str, now: datetime, reason: str = "") -> PaymentPlan:
        """Terminate an open plan"""
        plan = self._require_plan(plan_id)
        with self._hold(plan.account_id):
            with self.storage.atomic():
                plan = self._require_plan(plan_id)
                if not plan.status.is_open:
                    raise PaymentPlanError(f"Payment plan {plan_id} is {plan.status.value}")
                previous = plan.status
                plan.status = PlanStatus.CANCELED
                self._save_plan(plan, now)
                self.audit.record(
                    event_type=AuditEventType.PLAN_CANCELED,
                    component=self.component,
                    entity_type="payment_plan",
                    entity_id=plan.id,
                    occurred_at=now,
                    account_id=plan.account_id,
                    before={"status": previous},
                    after={"status": plan.status, "reason": reason}
                )
        return plan

    def get_plan(self, plan_id: str) -> Optional[PaymentPlan]:
        data = self.storage.load(self.plans_table, plan_id)
        if data:
            return self._plan_from_dict(data)
        return None

    def get_plans(self, account_id: Optional[str] = None,
                  status: Optional[PlanStatus] = None) -> List[PaymentPlan]:
        filters = {}
        if account_id:
            filters["account_id"] = account_id
        if status:
            filters["status"] = status.value
        plans = [self._plan_from_dict(data) for data in self.storage.find(self.plans_table, filters)]
        plans.sort(key=lambda p: (p.created_at, p.id))
        return plans

    def has_open_plan(self, account_id: str) -> bool:
        return any(plan.status.is_open for plan in self.get_plans(account_id=account_id))

    def get_payments(self, plan_id: str) -> List[PostedPayment]:
        payments = [self._payment_from_dict(data)
                    for data in self.storage.find(self.payments_table, {"plan_id": plan_id})]
        payments.sort(key=lambda p: (p.posted_at, p.id))
        return payments

    def get_schedule(self, plan_id: str) -> List[Installment]:
        """Installments of the current schedule with the amount covered on each"""
        plan = self._require_plan(plan_id)
        paid = (plan.amount_paid - plan.schedule_base_paid).minor
        schedule = []
        for number in range(1, plan.term + 1):
            amount = plan.monthly_payment if number < plan.term else plan.final_payment
            already_due = plan.monthly_payment.minor * (number - 1)
            covered = max(0, min(paid - already_due, amount.minor))
            schedule.append(Installment(
                number=number,
                due_date=add_months(plan.schedule_start, number - 1),
                amount=amount,
                paid=Money(covered, plan.currency)
            ))
        return schedule

    def _require_plan(self, plan_id: str) -> PaymentPlan:
        plan = self.get_plan(plan_id)
        if not plan:
            raise PaymentPlanError(f"Payment plan {plan_id} not found")
        return plan

    def _save_plan(self, plan: PaymentPlan, now: datetime) -> None:
        expected = plan.version
        plan.version = expected + 1
        plan.updated_at = now
        try:
            self.storage.save_versioned(self.plans_table, plan.id, self._plan_to_dict(plan), expected)
        except ConcurrencyConflict:
            plan.version = expected
            raise

    @staticmethod
    def _plan_summary(plan: PaymentPlan) -> Dict:
        return {
            "status": plan.status,
            "remaining_balance": plan.remaining_balance,
            "amount_paid": plan.amount_paid,
            "payments_remaining": plan.payments_remaining,
            "next_payment_date": plan.next_payment_date,
            "monthly_payment": plan.monthly_payment,
            "auto_pay": plan.auto_pay
        }

    def _plan_to_dict(self, plan: PaymentPlan) -> Dict:
        return {
            "id": plan.id,
            "created_at": plan.created_at.isoformat(),
            "updated_at": plan.updated_at.isoformat(),
            "account_id": plan.account_id,
            "currency": plan.currency.code,
            "total_amount_minor": plan.total_amount.minor,
            "monthly_payment_minor": plan.monthly_payment.minor,
            "final_payment_minor": plan.final_payment.minor,
            "term": plan.term,
            "schedule_start": plan.schedule_start.isoformat(),
            "schedule_base_paid_minor": plan.schedule_base_paid.minor,
            "amount_paid_minor": plan.amount_paid.minor,
            "remaining_balance_minor": plan.remaining_balance.minor,
            "payments_remaining": plan.payments_remaining,
            "next_payment_date": plan.next_payment_date.isoformat() if plan.next_payment_date else None,
            "auto_pay": plan.auto_pay,
            "status": plan.status.value,
            "missed_payments": plan.missed_payments,
            "unapplied_credit_minor": plan.unapplied_credit.minor,
            "version": plan.version
        }

    def _plan_from_dict(self, data: Dict) -> PaymentPlan:
        currency = Currency.from_code(data["currency"])

        def get_money(field_prefix: str) -> Money:
            return Money(int(data[f"{field_prefix}_minor"]), currency)

        return PaymentPlan(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            account_id=data["account_id"],
            currency=currency,
            total_amount=get_money("total_amount"),
            monthly_payment=get_money("monthly_payment"),
            final_payment=get_money("final_payment"),
            term=int(data["term"]),
            schedule_start=date.fromisoformat(data["schedule_start"]),
            schedule_base_paid=get_money("schedule_base_paid"),
            amount_paid=get_money("amount_paid"),
            remaining_balance=get_money("remaining_balance"),
            payments_remaining=int(data["payments_remaining"]),
            next_payment_date=date.fromisoformat(data["next_payment_date"]) if data.get("next_payment_date") else None,
            auto_pay=bool(data.get("auto_pay", False)),
            status=PlanStatus(data["status"]),
            missed_payments=int(data.get("missed_payments", 0)),
            unapplied_credit=get_money("unapplied_credit"),
            version=int(data.get("version", 0))
        )

    def _payment_to_dict(self, payment: PostedPayment) -> Dict:
        return {
            "id": payment.id,
            "created_at": payment.created_at.isoformat(),
            "updated_at": payment.updated_at.isoformat(),
            "plan_id": payment.plan_id,
            "account_id": payment.account_id,
            "currency": payment.amount.currency.code,
            "amount_minor": payment.amount.minor,
            "applied_minor": payment.applied.minor,
            "unapplied_minor": payment.unapplied.minor,
            "posted_at": payment.posted_at.isoformat()
        }

    def _payment_from_dict(self, data: Dict) -> PostedPayment:
        currency = Currency.from_code(data["currency"])
        return PostedPayment(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            plan_id=data["plan_id"],
            account_id=data["account_id"],
            amount=Money(int(data["amount_minor"]), currency),
            applied=Money(int(data["applied_minor"]), currency),
            unapplied=Money(int(data["unapplied_minor"]), currency),
            posted_at=datetime.fromisoformat(data["posted_at"])
        )
