"""
Rule Action Emission Module

Turns planned rule actions into collector tasks, queued letters and status
changes. Tasks and letters are immutable; resolution and dispatch are recorded
as separate companion records. Dedup keys make emission safe to repeat.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, date, timedelta
from typing import Dict, List, Optional
import uuid

from .accounts import CollectionAccount, Priority
from .activities import ActivityLog, ActivityType
from .audit import AuditRecorder, AuditEventType
from .config import EngineConfig, get_config
from .logging_config import log_action
from .rules import ActionType, PlannedAction
from .status_machine import CollectionStatusMachine
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("ar_engine.actions")


@dataclass
class CollectionTask(StorageRecord):
    """Collector work item emitted by a rule"""
    account_id: str
    rule_id: str
    task_type: str
    description: str
    priority: Priority
    due_date: date
    dedup_key: str
    triggering_activity_id: Optional[str] = None
    run_id: Optional[str] = None


@dataclass
class TaskResolution(StorageRecord):
    """Closes a task; stored under the task's id"""
    task_id: str
    resolved_by: str
    resolution: str


@dataclass
class LetterRequest(StorageRecord):
    """Letter queued for the notification subsystem"""
    account_id: str
    rule_id: str
    template: str
    dedup_key: str
    triggering_activity_id: Optional[str] = None
    run_id: Optional[str] = None


@dataclass
class LetterDispatch(StorageRecord):
    """Acknowledges delivery hand-off of a letter; stored under the letter's id"""
    letter_id: str
    reference: Optional[str] = None


class TaskBoard:
    """Collector tasks and their resolutions"""

    def __init__(self, storage: StorageInterface, audit: AuditRecorder):
        self.storage = storage
        self.audit = audit
        self.tasks_table = "collection_tasks"
        self.resolutions_table = "task_resolutions"

    def add(self, task: CollectionTask) -> None:
        self.storage.save(self.tasks_table, task.id, self._task_to_dict(task))

    def get(self, task_id: str) -> Optional[CollectionTask]:
        data = self.storage.load(self.tasks_table, task_id)
        if data:
            return self._task_from_dict(data)
        return None

    def is_resolved(self, task_id: str) -> bool:
        return self.storage.exists(self.resolutions_table, task_id)

    def find_open_by_dedup_key(self, dedup_key: str) -> Optional[CollectionTask]:
        for data in self.storage.find(self.tasks_table, {"dedup_key": dedup_key}):
            if not self.is_resolved(data["id"]):
                return self._task_from_dict(data)
        return None

    def list_tasks(self, account_id: Optional[str] = None, open_only: bool = False) -> List[CollectionTask]:
        filters = {"account_id": account_id} if account_id else {}
        tasks = [self._task_from_dict(data) for data in self.storage.find(self.tasks_table, filters)]
        if open_only:
            tasks = [task for task in tasks if not self.is_resolved(task.id)]
        tasks.sort(key=lambda t: (t.due_date, t.created_at, t.id))
        return tasks

    def count(self) -> int:
        return self.storage.count(self.tasks_table)

    def resolve(self, task_id: str, resolved_by: str, resolution: str, now: datetime) -> TaskResolution:
        """
        Resolve an open task

        Raises:
            ValueError: if the task does not exist or is already resolved
        """
        task = self.get(task_id)
        if not task:
            raise ValueError(f"Task {task_id} not found")
        if self.is_resolved(task_id):
            raise ValueError(f"Task {task_id} is already resolved")

        record = TaskResolution(
            id=task_id,
            created_at=now,
            updated_at=now,
            task_id=task_id,
            resolved_by=resolved_by,
            resolution=resolution
        )
        self.storage.save(self.resolutions_table, task_id, record.to_dict())

        self.audit.record(
            event_type=AuditEventType.TASK_RESOLVED,
            component="task_board",
            entity_type="collection_task",
            entity_id=task_id,
            occurred_at=now,
            account_id=task.account_id,
            after={"resolved_by": resolved_by, "resolution": resolution}
        )
        return record

    def _task_to_dict(self, task: CollectionTask) -> Dict:
        result = task.to_dict()
        result["priority"] = task.priority.value
        result["due_date"] = task.due_date.isoformat()
        return result

    def _task_from_dict(self, data: Dict) -> CollectionTask:
        data = dict(data)
        data["priority"] = Priority(data["priority"])
        data["due_date"] = date.fromisoformat(data["due_date"])
        return CollectionTask.from_dict(data)


class LetterQueue:
    """Outbound letter queue consumed by the notification subsystem"""

    def __init__(self, storage: StorageInterface, audit: AuditRecorder):
        self.storage = storage
        self.audit = audit
        self.letters_table = "letter_requests"
        self.dispatches_table = "letter_dispatches"

    def add(self, letter: LetterRequest) -> None:
        self.storage.save(self.letters_table, letter.id, letter.to_dict())

    def get(self, letter_id: str) -> Optional[LetterRequest]:
        data = self.storage.load(self.letters_table, letter_id)
        if data:
            return LetterRequest.from_dict(data)
        return None

    def find_by_dedup_key(self, dedup_key: str) -> Optional[LetterRequest]:
        found = self.storage.find(self.letters_table, {"dedup_key": dedup_key})
        if found:
            return LetterRequest.from_dict(found[0])
        return None

    def list_letters(self, account_id: Optional[str] = None) -> List[LetterRequest]:
        filters = {"account_id": account_id} if account_id else {}
        letters = [LetterRequest.from_dict(data) for data in self.storage.find(self.letters_table, filters)]
        letters.sort(key=lambda l: (l.created_at, l.id))
        return letters

    def pending(self) -> List[LetterRequest]:
        """Queued letters not yet acknowledged by the notification subsystem"""
        return [letter for letter in self.list_letters()
                if not self.storage.exists(self.dispatches_table, letter.id)]

    def acknowledge(self, letter_id: str, now: datetime, reference: Optional[str] = None) -> LetterDispatch:
        """
        Mark a letter as handed off for delivery

        Raises:
            ValueError: if the letter does not exist or was already acknowledged
        """
        letter = self.get(letter_id)
        if not letter:
            raise ValueError(f"Letter {letter_id} not found")
        if self.storage.exists(self.dispatches_table, letter_id):
            raise ValueError(f"Letter {letter_id} was already dispatched")

        dispatch = LetterDispatch(id=letter_id, created_at=now, updated_at=now,
                                  letter_id=letter_id, reference=reference)
        self.storage.save(self.dispatches_table, letter_id, dispatch.to_dict())

        self.audit.record(
            event_type=AuditEventType.LETTER_DISPATCHED,
            component="letter_queue",
            entity_type="letter_request",
            entity_id=letter_id,
            occurred_at=now,
            account_id=letter.account_id,
            after={"template": letter.template, "reference": reference}
        )
        return dispatch


class ActionEmitter:
    """Applies planned actions for one account inside its unit of work"""

    component = "rule_engine"

    def __init__(
        self,
        audit: AuditRecorder,
        activities: ActivityLog,
        status_machine: CollectionStatusMachine,
        tasks: TaskBoard,
        letters: LetterQueue,
        config: Optional[EngineConfig] = None
    ):
        self.audit = audit
        self.activities = activities
        self.status_machine = status_machine
        self.tasks = tasks
        self.letters = letters
        self.config = config or get_config()

    def emit(self, account: CollectionAccount, planned: PlannedAction, as_of: datetime,
             run_id: Optional[str] = None) -> bool:
        """
        Apply one planned action

        Returns:
            True if something new was emitted, False if the action was a duplicate

        Raises:
            IllegalTransitionError: if a status action targets an unreachable status
        """
        action_type = planned.action.type

        if action_type == ActionType.CREATE_TASK:
            related_id = self._create_task(account, planned, as_of, run_id)
        elif action_type == ActionType.QUEUE_LETTER:
            related_id = self._queue_letter(account, planned, as_of, run_id)
        else:
            related_id = self._change_status(account, planned, as_of, run_id)

        if related_id is None:
            return False

        self.audit.record(
            event_type=AuditEventType.RULE_ACTION_EMITTED,
            component=self.component,
            entity_type="collection_rule",
            entity_id=planned.rule_id,
            occurred_at=as_of,
            account_id=account.id,
            correlation_id=run_id,
            after={
                "action": action_type,
                "dedup_key": planned.dedup_key,
                "related_id": related_id
            }
        )
        self.activities.append(
            account_id=account.id,
            activity_type=ActivityType.RULE_ACTION,
            occurred_at=as_of,
            outcome=action_type.value,
            description=planned.rule_name,
            related_id=related_id,
            correlation_id=run_id,
            component=self.component
        )
        account.last_activity_at = as_of

        log_action(logger, "info", f"Rule {planned.rule_id} emitted {action_type.value}",
                   action=action_type.value, account_id=account.id, run_id=run_id,
                   extra={"dedup_key": planned.dedup_key})
        return True

    def _create_task(self, account: CollectionAccount, planned: PlannedAction, as_of: datetime,
                     run_id: Optional[str]) -> Optional[str]:
        if self.tasks.find_open_by_dedup_key(planned.dedup_key):
            return None

        action = planned.action
        due_in_days = action.due_in_days if action.due_in_days is not None else self.config.task_default_due_days
        task = CollectionTask(
            id=str(uuid.uuid4()),
            created_at=as_of,
            updated_at=as_of,
            account_id=account.id,
            rule_id=planned.rule_id,
            task_type=action.task_type,
            description=action.description or planned.rule_name,
            priority=action.priority or account.priority,
            due_date=as_of.date() + timedelta(days=due_in_days),
            dedup_key=planned.dedup_key,
            triggering_activity_id=planned.triggering_activity_id,
            run_id=run_id
        )
        self.tasks.add(task)

        self.audit.record(
            event_type=AuditEventType.TASK_CREATED,
            component=self.component,
            entity_type="collection_task",
            entity_id=task.id,
            occurred_at=as_of,
            account_id=account.id,
            correlation_id=run_id,
            after={
                "task_type": task.task_type,
                "priority": task.priority,
                "due_date": task.due_date,
                "dedup_key": task.dedup_key
            }
        )
        return task.id

    def _queue_letter(self, account: CollectionAccount, planned: PlannedAction, as_of: datetime,
                      run_id: Optional[str]) -> Optional[str]:
        if self.letters.find_by_dedup_key(planned.dedup_key):
            return None

        letter = LetterRequest(
            id=str(uuid.uuid4()),
            created_at=as_of,
            updated_at=as_of,
            account_id=account.id,
            rule_id=planned.rule_id,
            template=planned.action.template,
            dedup_key=planned.dedup_key,
            triggering_activity_id=planned.triggering_activity_id,
            run_id=run_id
        )
        self.letters.add(letter)

        self.audit.record(
            event_type=AuditEventType.LETTER_QUEUED,
            component=self.component,
            entity_type="letter_request",
            entity_id=letter.id,
            occurred_at=as_of,
            account_id=account.id,
            correlation_id=run_id,
            after={"template": letter.template, "dedup_key": letter.dedup_key}
        )
        return letter.id

    def _change_status(self, account: CollectionAccount, planned: PlannedAction, as_of: datetime,
                       run_id: Optional[str]) -> Optional[str]:
        before = (account.status, account.escalated)
        self.status_machine.apply_action(account, planned.action.type.value, as_of,
                                         rule_id=planned.rule_id, correlation_id=run_id)
        if (account.status, account.escalated) == before:
            return None
        return account.id
