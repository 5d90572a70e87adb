"""Task queue and status state machine backed by the queue document."""

from __future__ import annotations

import fcntl
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from agent_duo.orchestrator.contracts import (
    QueueDocumentError,
    TaskQueueError,
    read_queue_document,
    write_queue_document,
)
from agent_duo.orchestrator.models import (
    TASK_STATUS_ORDER,
    EligibilityPolicy,
    Task,
    TaskCounts,
    TaskQueueDocument,
    TaskStatus,
)
from agent_duo.orchestrator.state import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ELIGIBLE_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


class DuplicateTaskIdError(TaskQueueError):
    """A task with the same id already exists."""


class TaskNotFoundError(TaskQueueError):
    """No task with the requested id."""


class InvalidTransitionError(TaskQueueError):
    """Requested status does not follow pending -> in_progress -> completed."""


class ConcurrentModificationError(TaskQueueError):
    """Queue document kept changing underneath a mutation."""


class TaskQueue:
    """Reads and mutates the queue document with optimistic concurrency.

    Each mutation holds an exclusive `flock` on the `<queue>.lock` sidecar from
    load to replace, so writers going through this class never interleave.  A
    writer that skips the lock is still caught when it bumps `revision`: the
    mutation is re-applied to the fresh document.  One that neither locks nor
    bumps the revision cannot be detected.
    """

    def __init__(
        self,
        path: Path,
        *,
        policy: EligibilityPolicy = EligibilityPolicy.FIFO,
        clock: Callable[[], datetime] = utc_now,
        max_conflict_retries: int = 3,
    ) -> None:
        self.path = path
        self.lock_path = path.with_name(f"{path.name}.lock")
        self.policy = policy
        self._clock = clock
        self._max_conflict_retries = max_conflict_retries

    def load(self) -> TaskQueueDocument:
        return read_queue_document(self.path)

    def exists(self) -> bool:
        return self.path.exists()

    def tasks(self) -> list[Task]:
        return self.load().tasks

    def get(self, task_id: str) -> Task:
        return _find(self.load(), task_id)

    def counts(self) -> TaskCounts:
        counts = TaskCounts()
        for task in self.tasks():
            counts.total += 1
            if task.status == TaskStatus.PENDING:
                counts.pending += 1
            elif task.status == TaskStatus.IN_PROGRESS:
                counts.in_progress += 1
            elif task.status == TaskStatus.COMPLETED:
                counts.completed += 1
            elif task.status == TaskStatus.BLOCKED:
                counts.blocked += 1
        return counts

    def next_eligible(self) -> Task | None:
        """Return the first workable task in queue order, or None when none remain."""

        document = self.load()
        if self.policy == EligibilityPolicy.DEPENDENCIES:
            completed = {
                task.id for task in document.tasks if task.status == TaskStatus.COMPLETED
            }
            for task in document.tasks:
                if task.status == TaskStatus.IN_PROGRESS:
                    return task
                if task.status == TaskStatus.PENDING and all(
                    dependency in completed for dependency in task.dependencies
                ):
                    return task
            return None

        for task in document.tasks:
            if task.status in _ELIGIBLE_STATUSES:
                return task
        return None

    def unfinished(self) -> list[Task]:
        """Tasks not yet completed, blocked ones included."""

        return [task for task in self.tasks() if task.status != TaskStatus.COMPLETED]

    def enqueue(self, task: Task) -> Task:
        """Append a task as pending; ids must be unique."""

        def _apply(document: TaskQueueDocument) -> Task:
            if any(existing.id == task.id for existing in document.tasks):
                raise DuplicateTaskIdError(f"Task id already exists: {task.id}")
            task.status = TaskStatus.PENDING
            task.started_at = None
            task.completed_at = None
            if task.created_at is None:
                task.created_at = self._clock()
            document.tasks.append(task)
            return task

        created = self._mutate(_apply)
        logger.info("Task %s enqueued: %s", created.id, created.title)
        return created

    def add_task(  # noqa: PLR0913
        self,
        *,
        title: str,
        description: str = "",
        acceptance_criteria: str = "",
        dependencies: tuple[str, ...] = (),
        estimated_iterations: int | None = None,
        task_id: str | None = None,
    ) -> Task:
        """Enqueue a new task, assigning the next numeric id when none is given."""

        if not title.strip():
            raise ValueError("Task title must not be empty.")
        resolved_id = task_id.strip() if task_id else _next_numeric_id(self.load())
        return self.enqueue(
            Task(
                id=resolved_id,
                title=title.strip(),
                description=description,
                acceptance_criteria=acceptance_criteria,
                estimated_iterations=estimated_iterations,
                dependencies=list(dependencies),
            ),
        )

    def transition(self, task_id: str, new_status: TaskStatus) -> Task:
        """Move a task forward in its lifecycle; re-entering a status is a no-op."""

        def _apply(document: TaskQueueDocument) -> Task:
            task = _find(document, task_id)
            _check_transition(task, new_status)
            now = self._clock()
            task.status = new_status
            if new_status == TaskStatus.IN_PROGRESS and task.started_at is None:
                task.started_at = now
            if new_status == TaskStatus.COMPLETED:
                if task.started_at is None:
                    task.started_at = now
                if task.completed_at is None:
                    task.completed_at = now
            return task

        return self._mutate(_apply)

    def record_iteration(self, task_id: str) -> Task:
        """Count one Worker iteration spent on the task."""

        def _apply(document: TaskQueueDocument) -> Task:
            task = _find(document, task_id)
            task.actual_iterations += 1
            return task

        return self._mutate(_apply)

    def set_status(self, task_id: str, status: TaskStatus) -> Task:
        """Operator edit: set any status, including reverse moves and `blocked`."""

        def _apply(document: TaskQueueDocument) -> Task:
            task = _find(document, task_id)
            task.status = status
            if status == TaskStatus.PENDING:
                task.started_at = None
                task.completed_at = None
            elif status == TaskStatus.IN_PROGRESS:
                task.completed_at = None
                if task.started_at is None:
                    task.started_at = self._clock()
            elif status == TaskStatus.COMPLETED and task.completed_at is None:
                task.completed_at = self._clock()
            return task

        task = self._mutate(_apply)
        logger.info("Task %s status set to %s by operator", task.id, status.value)
        return task

    def remove(self, task_id: str) -> Task:
        """Operator removal; tasks are never removed automatically."""

        def _apply(document: TaskQueueDocument) -> Task:
            task = _find(document, task_id)
            document.tasks = [existing for existing in document.tasks if existing.id != task_id]
            return task

        return self._mutate(_apply)

    def init_example(self, *, project_name: str = "My Project") -> bool:
        """Write a starter queue document when none exists yet."""

        return self.initialize(example_document(project_name=project_name))

    def initialize(self, document: TaskQueueDocument, *, overwrite: bool = False) -> bool:
        """Write a whole new queue document; returns False when one exists and is kept."""

        with self._locked():
            if self.path.exists():
                if not overwrite:
                    return False
                try:
                    document.revision = max(document.revision, self.load().revision + 1)
                except QueueDocumentError:
                    logger.warning("Replacing unreadable queue document %s", self.path)
            write_queue_document(self.path, document)
        return True

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with self.lock_path.open("a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _mutate(self, apply: Callable[[TaskQueueDocument], T]) -> T:
        with self._locked():
            for _ in range(self._max_conflict_retries + 1):
                document = self.load()
                loaded_revision = document.revision
                result = apply(document)
                if self.load().revision != loaded_revision:
                    logger.warning("Queue document changed concurrently, re-applying mutation")
                    continue
                document.revision = loaded_revision + 1
                write_queue_document(self.path, document)
                return result
        raise ConcurrentModificationError(
            f"Queue document {self.path} changed during {self._max_conflict_retries + 1} attempts",
        )


def example_document(*, project_name: str = "My Project") -> TaskQueueDocument:
    """Starter queue used when there is nothing to plan from."""

    return TaskQueueDocument(
        project_name=project_name,
        description="Project description",
        tasks=[
            Task(
                id="1",
                title="Setup project structure",
                description="Create the basic folder structure and configuration files",
                acceptance_criteria=(
                    "Project has src/, tests/, and config/ directories with necessary files"
                ),
                estimated_iterations=1,
            ),
            Task(
                id="2",
                title="Implement core feature",
                description="Build the main functionality",
                acceptance_criteria="Feature works as expected with proper error handling",
                estimated_iterations=3,
                dependencies=["1"],
            ),
        ],
    )


def _find(document: TaskQueueDocument, task_id: str) -> Task:
    for task in document.tasks:
        if task.id == task_id:
            return task
    raise TaskNotFoundError(f"Task not found: {task_id}")


def _check_transition(task: Task, new_status: TaskStatus) -> None:
    if task.status == new_status and new_status != TaskStatus.BLOCKED:
        return
    current_rank = TASK_STATUS_ORDER.get(task.status)
    new_rank = TASK_STATUS_ORDER.get(new_status)
    if current_rank is None or new_rank is None or new_rank != current_rank + 1:
        raise InvalidTransitionError(
            f"Task {task.id}: cannot move {task.status.value} -> {new_status.value}",
        )


def _next_numeric_id(document: TaskQueueDocument) -> str:
    numeric = [int(task.id) for task in document.tasks if task.id.isdigit()]
    return str(max(numeric) + 1 if numeric else 1)
