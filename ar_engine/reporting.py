"""
Collections Reporting Module

Portfolio-level collections analytics built from the last classified state of
each account, the payment plans and the recent activity history.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .accounts import AccountRepository, CollectionStatus, Priority
from .actions import LetterQueue, TaskBoard
from .activities import ActivityLog
from .aging import AgingBucket
from .money import Money, Currency
from .payment_plans import PaymentPlanAmortizer, PlanStatus


class CollectionsReporter:
    """Read-only analytics over collections state"""

    def __init__(
        self,
        accounts: AccountRepository,
        activities: ActivityLog,
        amortizer: PaymentPlanAmortizer,
        tasks: TaskBoard,
        letters: LetterQueue
    ):
        self.accounts = accounts
        self.activities = activities
        self.amortizer = amortizer
        self.tasks = tasks
        self.letters = letters

    def collections_summary(self, as_of: datetime, currency: Currency = Currency.USD,
                            window_days: int = 30) -> Dict[str, Any]:
        """
        Portfolio collections statistics

        Args:
            as_of: End of the activity window
            currency: Accounts and plans in other currencies are excluded
            window_days: Length of the trailing activity window

        Returns:
            Aging totals per bucket, account counts and balances per status,
            plan counts and remaining balances per plan status, and activity
            counts per type and outcome within the window
        """
        zero = Money.zero(currency)
        summary = {
            "as_of": as_of,
            "currency": currency.code,
            "aging": {bucket.value: zero for bucket in AgingBucket},
            "total_balance": zero,
            "accounts_by_status": {status.value: {"count": 0, "balance": zero} for status in CollectionStatus},
            "accounts_by_priority": {priority.value: 0 for priority in Priority},
            "assigned_accounts": 0,
            "unassigned_accounts": 0,
            "plans_by_status": {status.value: {"count": 0, "remaining_balance": zero} for status in PlanStatus},
            "activity_counts": {},
            "open_tasks": len(self.tasks.list_tasks(open_only=True)),
            "pending_letters": len(self.letters.pending())
        }

        for account in self.accounts.list_accounts():
            if account.currency != currency:
                continue
            for bucket in AgingBucket:
                summary["aging"][bucket.value] = summary["aging"][bucket.value] + account.buckets.get(bucket)
            summary["total_balance"] = summary["total_balance"] + account.balance

            by_status = summary["accounts_by_status"][account.status.value]
            by_status["count"] += 1
            by_status["balance"] = by_status["balance"] + account.balance

            summary["accounts_by_priority"][account.priority.value] += 1
            if account.assigned_collector:
                summary["assigned_accounts"] += 1
            else:
                summary["unassigned_accounts"] += 1

        for plan in self.amortizer.get_plans():
            if plan.currency != currency:
                continue
            by_status = summary["plans_by_status"][plan.status.value]
            by_status["count"] += 1
            by_status["remaining_balance"] = by_status["remaining_balance"] + plan.remaining_balance

        window_start = as_of - timedelta(days=window_days)
        for activity in self.activities.all_activities():
            if not (window_start < activity.occurred_at <= as_of):
                continue
            outcomes = summary["activity_counts"].setdefault(activity.activity_type.value, {})
            outcome = activity.outcome or "none"
            outcomes[outcome] = outcomes.get(outcome, 0) + 1

        return summary

    def account_snapshot(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Last classified state of one account, or None if never evaluated"""
        account = self.accounts.get(account_id)
        if not account:
            return None
        return {
            "account_id": account.id,
            "balance": account.balance,
            "aging_buckets": {bucket.value: account.buckets.get(bucket) for bucket in AgingBucket},
            "status": account.status.value,
            "priority": account.priority.value,
            "assigned_collector": account.assigned_collector,
            "contact_attempts": account.contact_attempts,
            "last_activity_at": account.last_activity_at,
            "last_evaluated_at": account.last_evaluated_at
        }
