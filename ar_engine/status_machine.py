"""
Collection Status Machine Module

Derives an account's collection status and priority from aging results and
rule actions. Only the edges in LEGAL_TRANSITIONS may be applied; anything else
raises IllegalTransitionError and is recorded as a rejected transition.
Priority is computed here and nowhere else.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

from .accounts import CollectionAccount, CollectionStatus, Priority
from .aging import AgingBuckets
from .audit import AuditRecorder, AuditEventType
from .config import EngineConfig, get_config
from .exceptions import IllegalTransitionError
from .ledger import ChargeLine
from .logging_config import log_action
from .money import Money


logger = logging.getLogger("ar_engine.status")


LEGAL_TRANSITIONS: Dict[CollectionStatus, Set[CollectionStatus]] = {
    CollectionStatus.NEW: {CollectionStatus.ACTIVE},
    CollectionStatus.ACTIVE: {
        CollectionStatus.RESOLVED,
        CollectionStatus.WRITTEN_OFF,
        CollectionStatus.LEGAL
    },
    CollectionStatus.RESOLVED: {CollectionStatus.ACTIVE},
    CollectionStatus.WRITTEN_OFF: set(),
    CollectionStatus.LEGAL: set()
}

# Status set by each status-changing rule action
ACTION_TARGETS = {
    "escalate": CollectionStatus.ACTIVE,
    "write_off": CollectionStatus.WRITTEN_OFF,
    "refer_to_legal": CollectionStatus.LEGAL,
    "resolve": CollectionStatus.RESOLVED
}


def is_legal(from_status: CollectionStatus, to_status: CollectionStatus) -> bool:
    return to_status in LEGAL_TRANSITIONS[from_status]


def new_charge_lines(account: CollectionAccount, lines: Iterable[ChargeLine]) -> List[ChargeLine]:
    """Outstanding charge lines the account did not have when it resolved"""
    known = set(account.resolved_line_ids or ())
    return [line for line in lines if line.outstanding.is_positive() and line.id not in known]


def derive_status(current: CollectionStatus, buckets: AgingBuckets, balance: Money,
                  has_new_charge: bool = False) -> CollectionStatus:
    """
    Status implied by aging alone

    A resolved account reopens only for a charge line posted after it resolved,
    so a settled balance stays resolved. Written-off and legal accounts are
    never moved by aging.
    """
    if current == CollectionStatus.NEW:
        return CollectionStatus.ACTIVE if buckets.has_past_due() else CollectionStatus.NEW
    if current == CollectionStatus.ACTIVE:
        return CollectionStatus.RESOLVED if balance.is_zero() else CollectionStatus.ACTIVE
    if current == CollectionStatus.RESOLVED:
        return CollectionStatus.ACTIVE if has_new_charge else CollectionStatus.RESOLVED
    return current


def compute_priority(status: CollectionStatus, buckets: AgingBuckets, escalated: bool,
                     high_threshold: Money, medium_threshold: Money) -> Priority:
    """Priority from weighted bucket exposure"""
    if status == CollectionStatus.RESOLVED:
        return Priority.LOW
    if escalated:
        return Priority.HIGH

    exposure = buckets.weighted_exposure()
    if exposure >= high_threshold:
        return Priority.HIGH
    if exposure >= medium_threshold:
        return Priority.MEDIUM
    return Priority.LOW


class CollectionStatusMachine:
    """Applies aging results and rule actions to an account's status and priority"""

    component = "status_machine"

    def __init__(self, audit: AuditRecorder, config: Optional[EngineConfig] = None):
        self.audit = audit
        self.config = config or get_config()

    def apply_classification(
        self,
        account: CollectionAccount,
        buckets: AgingBuckets,
        balance: Money,
        as_of: datetime,
        correlation_id: Optional[str] = None,
        lines: Optional[Iterable[ChargeLine]] = None
    ) -> CollectionAccount:
        """
        Store new aging results on the account, then derive status and priority

        Args:
            lines: The charge lines behind the buckets. Without them the
                account's known line ids are left alone and a resolved
                account is never reopened.

        Raises:
            IllegalTransitionError: if the derived status is not reachable
        """
        has_new_charge = False
        if lines is not None:
            lines = list(lines)
            has_new_charge = bool(new_charge_lines(account, lines))
            account.charge_line_ids = sorted(line.id for line in lines)

        before = {"balance": account.balance, "buckets": account.buckets.to_dict()}
        account.balance = balance
        account.buckets = buckets
        account.last_evaluated_at = as_of

        if before["balance"] != balance or before["buckets"] != buckets.to_dict():
            self.audit.record(
                event_type=AuditEventType.AGING_CLASSIFIED,
                component="aging_classifier",
                entity_type="collection_account",
                entity_id=account.id,
                occurred_at=as_of,
                account_id=account.id,
                correlation_id=correlation_id,
                before=before,
                after={"balance": balance, "buckets": buckets.to_dict()}
            )

        target = derive_status(account.status, buckets, balance, has_new_charge)
        self.transition(account, target, as_of, reason="aging", correlation_id=correlation_id)
        self.refresh_priority(account, as_of, correlation_id)
        return account

    def apply_action(
        self,
        account: CollectionAccount,
        action_type: str,
        as_of: datetime,
        rule_id: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> CollectionAccount:
        """Apply a status-changing rule action (escalate, write_off, refer_to_legal, resolve)"""
        target = ACTION_TARGETS[action_type]
        reason = f"rule:{rule_id}" if rule_id else action_type

        self.transition(account, target, as_of, reason=reason, correlation_id=correlation_id)
        if action_type == "escalate" and not account.escalated:
            account.escalated = True
        self.refresh_priority(account, as_of, correlation_id)
        return account

    def settle(self, account: CollectionAccount, as_of: datetime,
               correlation_id: Optional[str] = None) -> CollectionAccount:
        """Resolve an account on a recorded settlement"""
        self.transition(account, CollectionStatus.RESOLVED, as_of, reason="settlement",
                        correlation_id=correlation_id)
        self.refresh_priority(account, as_of, correlation_id)
        return account

    def transition(
        self,
        account: CollectionAccount,
        to_status: CollectionStatus,
        as_of: datetime,
        reason: str,
        correlation_id: Optional[str] = None
    ) -> bool:
        """
        Move the account to a new status

        Returns:
            True if the status changed, False if it was already to_status

        Raises:
            IllegalTransitionError: if the edge is not legal
        """
        from_status = account.status
        if from_status == to_status:
            return False
        if not is_legal(from_status, to_status):
            raise IllegalTransitionError(account.id, from_status.value, to_status.value)

        account.status = to_status
        if to_status == CollectionStatus.RESOLVED:
            account.escalated = False
            account.resolved_line_ids = list(account.charge_line_ids)
        elif from_status == CollectionStatus.RESOLVED:
            account.resolved_line_ids = None

        self.audit.record(
            event_type=AuditEventType.STATUS_CHANGED,
            component=self.component,
            entity_type="collection_account",
            entity_id=account.id,
            occurred_at=as_of,
            account_id=account.id,
            correlation_id=correlation_id,
            before={"status": from_status},
            after={"status": to_status, "reason": reason}
        )
        log_action(logger, "info", f"Account {account.id} moved {from_status.value} -> {to_status.value}",
                   action="status_changed", account_id=account.id, correlation_id=correlation_id,
                   extra={"reason": reason})
        return True

    def refresh_priority(self, account: CollectionAccount, as_of: datetime,
                         correlation_id: Optional[str] = None) -> Priority:
        high = Money.from_decimal(Decimal(self.config.priority_high_threshold), account.currency)
        medium = Money.from_decimal(Decimal(self.config.priority_medium_threshold), account.currency)
        priority = compute_priority(account.status, account.buckets, account.escalated, high, medium)

        if priority != account.priority:
            self.audit.record(
                event_type=AuditEventType.PRIORITY_CHANGED,
                component=self.component,
                entity_type="collection_account",
                entity_id=account.id,
                occurred_at=as_of,
                account_id=account.id,
                correlation_id=correlation_id,
                before={"priority": account.priority},
                after={"priority": priority}
            )
            account.priority = priority
        return priority

    def record_rejection(self, error: IllegalTransitionError, as_of: datetime,
                         correlation_id: Optional[str] = None) -> None:
        """
        Log and audit a rejected transition

        Called after the account's unit has rolled back, so the rejection
        record survives while the transition itself is never applied.
        """
        log_action(logger, "warning", str(error), action="transition_rejected",
                   account_id=error.account_id, correlation_id=correlation_id,
                   extra={"from_status": error.from_status, "to_status": error.to_status})
        self.audit.record(
            event_type=AuditEventType.TRANSITION_REJECTED,
            component=self.component,
            entity_type="collection_account",
            entity_id=error.account_id,
            occurred_at=as_of,
            account_id=error.account_id,
            correlation_id=correlation_id,
            before={"status": error.from_status},
            after={"status": error.to_status, "applied": False}
        )
