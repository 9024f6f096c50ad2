"""
Batch Orchestrator Module

Scheduled run over the whole account population. Each account is processed in
its own atomic unit (classify, derive status, evaluate rules, emit actions) on
a bounded worker pool. Per-account failures are collected into the run report;
only run-level failures abort the run, and they commit nothing but the report.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import uuid

from .accounts import AccountLocks, AccountRepository, CollectionStatus
from .actions import ActionEmitter
from .activities import ActivityLog
from .aging import AgingBuckets, classify, verify_against_balance
from .audit import AuditRecorder, AuditEventType
from .config import EngineConfig, get_config
from .exceptions import (
    ConcurrencyConflict, DataIntegrityError, EngineError, ExternalReadError, IllegalTransitionError,
    RunAbortedError, UnitTimeoutError
)
from .ledger import ChargeLine, LedgerReader
from .logging_config import log_action
from .money import Money
from .payment_plans import PaymentPlanAmortizer
from .rules import CollectionRule, RuleContext, RuleEngine, RuleRepository
from .status_machine import CollectionStatusMachine
from .storage import StorageInterface


logger = logging.getLogger("ar_engine.batch")


class RunStatus(Enum):
    """Lifecycle of a batch run"""
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AccountOutcome(Enum):
    """Result of one account's unit of work"""
    PROCESSED = "processed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    NOT_RUN = "not_run"            # Run cancelled before the unit started


class CancellationToken:
    """Cooperative cancellation signal, checked between account units"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class UnitResult:
    account_id: str
    outcome: AccountOutcome
    actions_emitted: int = 0
    rule_errors: List[str] = field(default_factory=list)
    error_type: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RunReport:
    """Summary of a batch run"""
    run_id: str
    as_of: datetime
    status: RunStatus = RunStatus.SCHEDULED
    accounts_total: int = 0
    accounts_processed: int = 0
    accounts_failed: int = 0
    accounts_timed_out: int = 0
    accounts_not_run: int = 0
    actions_emitted: int = 0
    rule_errors: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)   # Bounded sample
    failure_reason: Optional[str] = None
    duration_seconds: float = 0.0

    def add_error(self, sample: Dict[str, Any], limit: int) -> None:
        if len(self.errors) < limit:
            self.errors.append(sample)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.run_id,
            "run_id": self.run_id,
            "as_of": self.as_of.isoformat(),
            "status": self.status.value,
            "accounts_total": self.accounts_total,
            "accounts_processed": self.accounts_processed,
            "accounts_failed": self.accounts_failed,
            "accounts_timed_out": self.accounts_timed_out,
            "accounts_not_run": self.accounts_not_run,
            "actions_emitted": self.actions_emitted,
            "rule_errors": self.rule_errors,
            "errors": self.errors,
            "failure_reason": self.failure_reason,
            "duration_seconds": self.duration_seconds
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RunReport':
        return cls(
            run_id=data["run_id"],
            as_of=datetime.fromisoformat(data["as_of"]),
            status=RunStatus(data["status"]),
            accounts_total=data["accounts_total"],
            accounts_processed=data["accounts_processed"],
            accounts_failed=data["accounts_failed"],
            accounts_timed_out=data["accounts_timed_out"],
            accounts_not_run=data["accounts_not_run"],
            actions_emitted=data["actions_emitted"],
            rule_errors=data["rule_errors"],
            errors=data.get("errors", []),
            failure_reason=data.get("failure_reason"),
            duration_seconds=data.get("duration_seconds", 0.0)
        )


class BatchOrchestrator:
    """
    Runs aging, status derivation and rule evaluation across all accounts
    """

    component = "batch_orchestrator"

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LedgerReader,
        accounts: AccountRepository,
        activities: ActivityLog,
        status_machine: CollectionStatusMachine,
        rules: RuleRepository,
        engine: RuleEngine,
        emitter: ActionEmitter,
        amortizer: PaymentPlanAmortizer,
        audit: AuditRecorder,
        config: Optional[EngineConfig] = None,
        locks: Optional[AccountLocks] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.storage = storage
        self.ledger = ledger
        self.accounts = accounts
        self.activities = activities
        self.status_machine = status_machine
        self.rules = rules
        self.engine = engine
        self.emitter = emitter
        self.amortizer = amortizer
        self.audit = audit
        self.config = config or get_config()
        self.locks = locks or AccountLocks()
        self.clock = clock
        self.runs_table = "batch_runs"

    def run(self, as_of: datetime, cancel_token: Optional[CancellationToken] = None,
            run_id: Optional[str] = None) -> RunReport:
        """
        Execute one batch run as of the given time

        Args:
            as_of: Reference time for aging and rule evaluation
            cancel_token: Optional cooperative cancellation signal
            run_id: Optional explicit run id

        Returns:
            The committed RunReport
        """
        report = RunReport(run_id=run_id or str(uuid.uuid4()), as_of=as_of)
        started = time.monotonic()

        report.status = RunStatus.RUNNING
        log_action(logger, "info", f"Batch run started as of {as_of.isoformat()}",
                   action="run_started", run_id=report.run_id)

        try:
            account_ids = self._enumerate_accounts()
            rules = self._load_rules()
        except RunAbortedError as e:
            report.status = RunStatus.FAILED
            report.failure_reason = str(e)
            log_action(logger, "error", f"Batch run failed: {e}", action="run_failed", run_id=report.run_id)
            report.duration_seconds = time.monotonic() - started
            self._commit_report(report)
            return report

        report.accounts_total = len(account_ids)
        abandoned = threading.Event()
        pool = ThreadPoolExecutor(max_workers=self.config.batch_max_workers)
        try:
            futures = [
                (account_id, pool.submit(self._process_account, account_id, as_of, rules,
                                         report.run_id, cancel_token, abandoned))
                for account_id in account_ids
            ]
            results = self._collect(futures, abandoned, report.run_id)
        finally:
            # Stragglers blocked in a read must not hold the run open
            pool.shutdown(wait=not abandoned.is_set(), cancel_futures=True)

        for result in results:
            self._tally(report, result)

        if report.accounts_not_run:
            report.status = RunStatus.CANCELLED
        elif report.accounts_failed or report.accounts_timed_out or report.rule_errors:
            report.status = RunStatus.COMPLETED_WITH_ERRORS
        else:
            report.status = RunStatus.COMPLETED

        report.duration_seconds = time.monotonic() - started
        self._commit_report(report)
        log_action(logger, "info", f"Batch run {report.status.value}", action="run_finished",
                   run_id=report.run_id, extra={
                       "processed": report.accounts_processed,
                       "failed": report.accounts_failed,
                       "timed_out": report.accounts_timed_out,
                       "actions_emitted": report.actions_emitted
                   })
        return report

    def _enumerate_accounts(self) -> List[str]:
        try:
            return list(self.ledger.iter_account_ids(self.config.batch_page_size))
        except ExternalReadError as e:
            raise RunAbortedError(f"Cannot enumerate accounts: {e}") from e

    def _load_rules(self) -> List[CollectionRule]:
        try:
            return self.rules.list_active()
        except Exception as e:
            raise RunAbortedError(f"Cannot load collection rules: {e}") from e

    def _collect(self, futures: List[Tuple[str, Future]], abandoned: threading.Event,
                 run_id: str) -> List[UnitResult]:
        """
        Wait for every unit, within a bound derived from the per-account budget

        Units still queued when the bound passes are not run. Units still
        running after a short grace are reported as timed out; the abandoned
        flag makes them roll back at their next step.
        """
        waves = -(-len(futures) // max(self.config.batch_max_workers, 1))
        bound = waves * self.config.account_unit_timeout_seconds + self.config.run_wait_grace_seconds

        _, pending = wait([future for _, future in futures], timeout=bound)
        if pending:
            abandoned.set()
            for future in pending:
                future.cancel()
            wait(pending, timeout=self.config.run_wait_grace_seconds)
            log_action(logger, "warning", f"Run wait bound of {bound:.1f}s passed with {len(pending)} units open",
                       action="run_wait_exceeded", run_id=run_id)

        results = []
        for account_id, future in futures:
            if future.cancelled():
                results.append(UnitResult(account_id, AccountOutcome.NOT_RUN))
            elif future.done():
                results.append(future.result())
            else:
                error = UnitTimeoutError(f"Account {account_id} was still running when its run stopped waiting")
                results.append(self._failure(account_id, AccountOutcome.TIMED_OUT, error, run_id))
        return results

    def _process_account(self, account_id: str, as_of: datetime, rules: List[CollectionRule],
                         run_id: str, cancel_token: Optional[CancellationToken],
                         abandoned: threading.Event) -> UnitResult:
        if abandoned.is_set() or (cancel_token and cancel_token.is_cancelled):
            return UnitResult(account_id, AccountOutcome.NOT_RUN)

        with self.locks.hold(account_id):
            for attempt in (1, 2):
                deadline = self.clock() + self.config.account_unit_timeout_seconds
                try:
                    with self.storage.atomic():
                        return self._evaluate_account(account_id, as_of, rules, run_id, deadline, abandoned)
                except ConcurrencyConflict as e:
                    if attempt == 2:
                        return self._failure(account_id, AccountOutcome.FAILED, e, run_id)
                    log_action(logger, "warning", f"Version conflict, retrying: {e}",
                               action="unit_retry", account_id=account_id, run_id=run_id)
                except UnitTimeoutError as e:
                    return self._failure(account_id, AccountOutcome.TIMED_OUT, e, run_id)
                except IllegalTransitionError as e:
                    self.status_machine.record_rejection(e, as_of, correlation_id=run_id)
                    return self._failure(account_id, AccountOutcome.FAILED, e, run_id, logged=True)
                except EngineError as e:
                    return self._failure(account_id, AccountOutcome.FAILED, e, run_id)
                except Exception as e:
                    logger.exception(f"Unexpected error processing account {account_id}")
                    return self._failure(account_id, AccountOutcome.FAILED, e, run_id, logged=True)

    def _evaluate_account(self, account_id: str, as_of: datetime, rules: List[CollectionRule],
                          run_id: str, deadline: float,
                          abandoned: threading.Event) -> UnitResult:
        lines, balance, buckets = self._read_ledger(account_id, as_of, run_id, deadline, abandoned)

        account = self.accounts.get_or_new(account_id, balance.currency, as_of)
        latest = self.activities.latest(account_id, exclude=())
        if latest and (account.last_activity_at is None or latest.occurred_at > account.last_activity_at):
            account.last_activity_at = latest.occurred_at

        self.status_machine.apply_classification(account, buckets, balance, as_of,
                                                 correlation_id=run_id, lines=lines)
        self._check_deadline(deadline, account_id, "status derivation", abandoned)

        result = UnitResult(account_id, AccountOutcome.PROCESSED)
        if account.status in (CollectionStatus.NEW, CollectionStatus.ACTIVE):
            ctx = RuleContext(
                account=account,
                latest_activity=self.activities.latest(account_id),
                as_of=as_of,
                has_open_plan=self.amortizer.has_open_plan(account_id)
            )
            evaluation = self.engine.evaluate(rules, ctx, run_id=run_id)
            account.rule_streaks = evaluation.streaks
            result.rule_errors = [str(error) for error in evaluation.errors]

            for planned in evaluation.actions:
                if self.emitter.emit(account, planned, as_of, run_id=run_id):
                    result.actions_emitted += 1

        self._check_deadline(deadline, account_id, "commit", abandoned)
        self.accounts.save(account, as_of)
        return result

    def _read_ledger(self, account_id: str, as_of: datetime, run_id: str, deadline: float,
                     abandoned: threading.Event) -> Tuple[List[ChargeLine], Money, AgingBuckets]:
        """
        Read charge lines, then the balance, and classify

        A payment posted between the two reads makes the totals disagree; the
        pair is read once more before the mismatch counts as a data error.
        """
        for attempt in (1, 2):
            lines = self.ledger.get_charge_lines(account_id)
            balance = self.ledger.get_balance(account_id).balance
            self._check_deadline(deadline, account_id, "ledger read", abandoned)

            buckets = classify(lines, as_of, balance.currency)
            try:
                verify_against_balance(buckets, balance, self.config.bucket_tolerance_minor_units, account_id)
                return lines, balance, buckets
            except DataIntegrityError as e:
                if attempt == 2:
                    raise
                log_action(logger, "warning", f"Ledger moved during read, re-reading: {e}",
                           action="ledger_reread", account_id=account_id, run_id=run_id)

    def _check_deadline(self, deadline: float, account_id: str, step: str,
                        abandoned: Optional[threading.Event] = None) -> None:
        if abandoned is not None and abandoned.is_set():
            raise UnitTimeoutError(f"Account {account_id} was abandoned by its run before {step}")
        if self.clock() > deadline:
            raise UnitTimeoutError(f"Account {account_id} exceeded its time budget before {step}")

    def _failure(self, account_id: str, outcome: AccountOutcome, error: Exception, run_id: str,
                 logged: bool = False) -> UnitResult:
        if not logged:
            log_action(logger, "error", f"Account {account_id} {outcome.value}: {error}",
                       action=f"account_{outcome.value}", account_id=account_id, run_id=run_id)
        return UnitResult(account_id, outcome, error_type=type(error).__name__, error=str(error))

    def _tally(self, report: RunReport, result: UnitResult) -> None:
        limit = self.config.error_sample_limit

        if result.outcome == AccountOutcome.PROCESSED:
            report.accounts_processed += 1
            report.actions_emitted += result.actions_emitted
        elif result.outcome == AccountOutcome.TIMED_OUT:
            report.accounts_timed_out += 1
        elif result.outcome == AccountOutcome.NOT_RUN:
            report.accounts_not_run += 1
            return
        else:
            report.accounts_failed += 1

        if result.error:
            report.add_error({
                "account_id": result.account_id,
                "outcome": result.outcome.value,
                "error_type": result.error_type,
                "message": result.error
            }, limit)

        for message in result.rule_errors:
            report.rule_errors += 1
            report.add_error({
                "account_id": result.account_id,
                "outcome": "rule_skipped",
                "error_type": "RuleEvaluationError",
                "message": message
            }, limit)

    def _commit_report(self, report: RunReport) -> None:
        """Store the run report and append it to the run's audit stream"""
        with self.storage.atomic():
            self.storage.save(self.runs_table, report.run_id, report.to_dict())
            self.audit.record(
                event_type=AuditEventType.RUN_FINISHED,
                component=self.component,
                entity_type="batch_run",
                entity_id=report.run_id,
                occurred_at=report.as_of,
                correlation_id=report.run_id,
                stream=f"run:{report.run_id}",
                after=report.to_dict()
            )

    def get_run(self, run_id: str) -> Optional[RunReport]:
        data = self.storage.load(self.runs_table, run_id)
        if data:
            return RunReport.from_dict(data)
        return None

    def list_runs(self) -> List[RunReport]:
        runs = [RunReport.from_dict(data) for data in self.storage.load_all(self.runs_table)]
        runs.sort(key=lambda r: (r.as_of, r.run_id))
        return runs
