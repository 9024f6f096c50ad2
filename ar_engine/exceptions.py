"""
Engine error taxonomy.

Per-account errors (integrity, rule, concurrency, timeout) never abort a batch;
RunAbortedError does, with nothing but the failed run report committed.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all collections engine errors"""


class DataIntegrityError(EngineError):
    """Aging buckets disagree with the balance, or an illegal transition was attempted"""
    
    def __init__(self, message: str, account_id: Optional[str] = None):
        super().__init__(message)
        self.account_id = account_id


class IllegalTransitionError(DataIntegrityError):
    """Collection status transition outside the legal edges"""
    
    def __init__(self, account_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Illegal collection status transition {from_status} -> {to_status} "
            f"for account {account_id}",
            account_id=account_id
        )
        self.from_status = from_status
        self.to_status = to_status


class RuleEvaluationError(EngineError):
    """Malformed rule configuration or a trigger that failed to evaluate"""
    
    def __init__(self, rule_id: str, message: str):
        super().__init__(f"Rule {rule_id}: {message}")
        self.rule_id = rule_id


class ConcurrencyConflict(EngineError):
    """Optimistic version mismatch on a versioned record"""
    
    def __init__(self, table: str, record_id: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            f"Version conflict on {table}/{record_id}: "
            f"expected {expected_version}, found {actual_version}"
        )
        self.table = table
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class ExternalReadError(EngineError):
    """Billing ledger unavailable or record missing"""


class UnitTimeoutError(EngineError):
    """Per-account unit of work exceeded its execution budget"""


class PaymentPlanError(EngineError, ValueError):
    """Invalid plan terms or an operation on a plan in the wrong state"""


class RunAbortedError(EngineError):
    """Run-level failure; no account state is committed"""
