"""
Task Queue

FIFO of pending Tasks for one worker, plus the outcome rules:

- ok(result)     -> completed
- error(reason)  -> failed, never attempted again
- retry(reason)  -> back to pending at the tail of the queue

Retries are not capped and not delayed.
"""

import logging
from collections import deque
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from ..common.schemas import Task, TaskStatus, utcnow
from ..common.storage import Storage

logger = logging.getLogger("advisor.agent.task_queue")


def _is_due(task: Task, now: datetime) -> bool:
    if task.scheduled_for is None:
        return True
    scheduled = task.scheduled_for
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=timezone.utc)
    return scheduled <= now


class OutcomeKind(str, Enum):
    OK = "ok"
    ERROR = "error"
    RETRY = "retry"


@dataclass(frozen=True)
class TaskOutcome:
    """Result of executing a task, plus any new pending tasks it deferred"""
    kind: OutcomeKind
    detail: str = ""
    tasks: Tuple[Task, ...] = ()

    @classmethod
    def ok(cls, result: str, tasks: Iterable[Task] = ()) -> "TaskOutcome":
        return cls(OutcomeKind.OK, result, tuple(tasks))

    @classmethod
    def error(cls, reason: str, tasks: Iterable[Task] = ()) -> "TaskOutcome":
        return cls(OutcomeKind.ERROR, reason, tuple(tasks))

    @classmethod
    def retry(cls, reason: str, tasks: Iterable[Task] = ()) -> "TaskOutcome":
        return cls(OutcomeKind.RETRY, reason, tuple(tasks))


class TaskQueue:
    """Pending tasks for one user, persisted through Storage."""

    def __init__(self, storage: Storage, tasks: Optional[Iterable[Task]] = None):
        self._storage = storage
        self._queue: deque = deque()
        for task in tasks or []:
            self.enqueue(task)

    def enqueue(self, task: Task) -> None:
        if task.status != TaskStatus.PENDING:
            raise ValueError(f"Only pending tasks can be queued, got {task.status.value}")
        self._queue.append(task)

    def next(self, now: Optional[datetime] = None) -> Optional[Task]:
        """Pop the oldest task that is due, or None. Tasks scheduled later keep their place."""
        now = now or utcnow()
        for task in self._queue:
            if _is_due(task, now):
                self._queue.remove(task)
                return task
        return None

    def apply_outcome(self, task: Task, outcome: TaskOutcome) -> Task:
        """Record an outcome on an in-progress task and persist it."""
        if outcome.kind == OutcomeKind.OK:
            task.complete(outcome.detail)
        elif outcome.kind == OutcomeKind.ERROR:
            task.fail(outcome.detail)
        else:
            task.requeue(outcome.detail)
            self._queue.append(task)
            logger.info("Task %s requeued (attempt %d): %s", task.id, task.attempts, outcome.detail)

        self._storage.update_task(task)
        return task

    def pending(self) -> List[Task]:
        return list(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    def __contains__(self, task_id: str) -> bool:
        return any(t.id == task_id for t in self._queue)
