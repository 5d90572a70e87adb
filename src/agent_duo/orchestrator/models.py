"""Domain models for the task queue, coordination state and reviews."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states as stored in the queue document."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


# Position of each status in the monotonic lifecycle. BLOCKED sits outside it.
TASK_STATUS_ORDER: dict[TaskStatus, int] = {
    TaskStatus.PENDING: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.COMPLETED: 2,
}


class WorkerStatus(str, Enum):
    """Overall Worker status marker."""

    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in {WorkerStatus.STOPPING, WorkerStatus.STOPPED, WorkerStatus.COMPLETED}


class ManagerStatus(str, Enum):
    """Overall Manager status marker."""

    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class ProcessRole(str, Enum):
    """Supervised process roles."""

    WORKER = "worker"
    MANAGER = "manager"


class EligibilityPolicy(str, Enum):
    """How the Worker picks the next task."""

    FIFO = "fifo"
    DEPENDENCIES = "dependencies"


class GatewayOutcome(str, Enum):
    """Normalized outcome of one external agent invocation."""

    SUCCESS = "success"
    FAILURE = "failure"
    RATE_LIMITED = "rate_limited"


class ReviewVerdict(str, Enum):
    """Manager verdict for one review."""

    APPROVED = "approved"
    NEEDS_WORK = "needs_work"


class ReviewOutcome(str, Enum):
    """Result of one Manager review attempt."""

    REVIEWED = "reviewed"
    SKIPPED = "skipped"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass(slots=True)
class Task:
    """One unit of work in the queue."""

    id: str
    title: str
    description: str = ""
    acceptance_criteria: str = ""
    status: TaskStatus = TaskStatus.PENDING
    estimated_iterations: int | None = None
    actual_iterations: int = 0
    dependencies: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskQueueDocument:
    """Whole queue document as persisted in `prds/tasks.json`."""

    tasks: list[Task] = field(default_factory=list)
    project_name: str = ""
    description: str = ""
    revision: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskCounts:
    """Aggregate task counts by status."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    blocked: int = 0


@dataclass(slots=True)
class LivenessRecord:
    """Process id captured by the Supervisor at launch time."""

    role: ProcessRole
    pid: int
    started_at: datetime | None = None


@dataclass(slots=True)
class SkillArtifact:
    """Named guidance document written by the Manager."""

    name: str
    content: str
    modified_at: float = 0.0


@dataclass(slots=True)
class SkillDraft:
    """Skill proposed by a review response, not yet persisted."""

    name: str
    content: str


@dataclass(slots=True)
class ReviewRecord:
    """Write-once result of a completed review."""

    review_number: int
    iteration: int
    task_id: str | None
    verdict: ReviewVerdict
    score: int | None
    findings: str
    skills: list[str] = field(default_factory=list)
    directive_issued: bool = False
    model: str = ""
    created_at: datetime | None = None


@dataclass(slots=True)
class ParsedReview:
    """Structured view of the agent's review response."""

    verdict: ReviewVerdict
    score: int | None
    findings: str
    skills: list[SkillDraft] = field(default_factory=list)
    directive: str | None = None
    parser: str = "json"
