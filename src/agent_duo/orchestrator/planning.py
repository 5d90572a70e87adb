"""Planning step: turn `prds/*.md` into the task queue through the agent.

With no PRD files the example queue is written instead.  When the agent call
fails or its reply is not a usable task list, a one-task template is written
so the operator has something to edit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from agent_duo.config import GatewaySettings, InstancePaths
from agent_duo.orchestrator.backend import AgentGateway, GatewayRequest
from agent_duo.orchestrator.context import PrdDocument, build_planning_prompt
from agent_duo.orchestrator.contracts import (
    QueueDocumentError,
    TaskQueueError,
    queue_document_from_dict,
)
from agent_duo.orchestrator.models import Task, TaskQueueDocument, TaskStatus
from agent_duo.orchestrator.queue import TaskQueue, example_document
from agent_duo.orchestrator.reviews import extract_json_object
from agent_duo.orchestrator.state import utc_now

logger = logging.getLogger(__name__)


class PlanSource(str, Enum):
    """Where the written queue came from."""

    PRDS = "prds"
    EXAMPLE = "example"
    FALLBACK = "fallback"


class PlanningError(ValueError):
    """Agent reply cannot be turned into a task queue."""


@dataclass(slots=True)
class PlanResult:
    source: PlanSource
    path: Path
    tasks: list[Task]
    prd_names: list[str]
    reason: str | None = None


def collect_prds(prds_dir: Path) -> list[PrdDocument]:
    if not prds_dir.exists():
        return []
    return [
        PrdDocument(name=path.name, text=path.read_text("utf-8", errors="replace"))
        for path in sorted(prds_dir.glob("*.md"))
        if path.is_file()
    ]


def parse_task_plan(text: str) -> TaskQueueDocument:
    """Validate the agent's task list; every task starts pending with no history."""

    payload = extract_json_object(text)
    if payload is None:
        raise PlanningError("Agent reply contains no JSON object")
    try:
        document = queue_document_from_dict(payload)
    except QueueDocumentError as error:
        raise PlanningError(str(error)) from error
    if not document.tasks:
        raise PlanningError("Agent reply lists no tasks")

    seen: set[str] = set()
    for task in document.tasks:
        if task.id in seen:
            raise PlanningError(f"Duplicate task id in plan: {task.id}")
        if not task.title.strip():
            raise PlanningError(f"Task {task.id} has no title")
        seen.add(task.id)
    for task in document.tasks:
        unknown = [dependency for dependency in task.dependencies if dependency not in seen]
        if unknown:
            raise PlanningError(f"Task {task.id} depends on unknown tasks: {', '.join(unknown)}")
        task.status = TaskStatus.PENDING
        task.actual_iterations = 0
        task.started_at = None
        task.completed_at = None

    document.revision = 0
    return document


def fallback_document() -> TaskQueueDocument:
    return TaskQueueDocument(
        project_name="Your Project",
        description="Manually edit this file with your tasks",
        tasks=[
            Task(
                id="1",
                title="Setup project",
                description="Initialize the project structure",
                acceptance_criteria="Project structure created",
                estimated_iterations=1,
            ),
        ],
    )


class TaskPlanner:
    """Writes the initial task queue from the PRD files of an instance."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        paths: InstancePaths,
        gateway: AgentGateway,
        model: str,
        gateway_settings: GatewaySettings | None = None,
        queue: TaskQueue | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.paths = paths
        self.gateway = gateway
        self.model = model
        self.gateway_settings = gateway_settings or GatewaySettings()
        self.queue = queue or TaskQueue(paths.tasks_file)
        self._clock = clock

    def plan(self, *, overwrite: bool = False) -> PlanResult:
        if self.queue.exists() and not overwrite:
            raise TaskQueueError(
                f"Task queue already exists at {self.queue.path}; use --force to replace it",
            )
        self.paths.ensure()

        prds = collect_prds(self.paths.prds_dir)
        prd_names = [prd.name for prd in prds]
        if not prds:
            logger.info("No PRD files in %s, writing the example queue", self.paths.prds_dir)
            return self._write(example_document(), PlanSource.EXAMPLE, prd_names, overwrite)

        logger.info("Planning tasks from %s PRD file(s) with model=%s", len(prds), self.model)
        result = self.gateway.invoke(
            GatewayRequest(
                model=self.model,
                prompt=build_planning_prompt(prds),
                workdir=self.paths.project_path,
                transcript_path=self.paths.logs_dir / "planning" / "plan.md",
                timeout_seconds=self.gateway_settings.timeout_seconds,
                graceful_shutdown_seconds=self.gateway_settings.graceful_shutdown_seconds,
            ),
        )
        if not result.ok:
            reason = result.reason or result.outcome.value
            logger.warning("Planning call failed, writing the template queue: %s", reason)
            return self._write(
                fallback_document(),
                PlanSource.FALLBACK,
                prd_names,
                overwrite,
                reason=reason,
            )

        try:
            document = parse_task_plan(result.text)
        except PlanningError as error:
            logger.warning("Planning reply unusable, writing the template queue: %s", error)
            return self._write(
                fallback_document(),
                PlanSource.FALLBACK,
                prd_names,
                overwrite,
                reason=str(error),
            )
        return self._write(document, PlanSource.PRDS, prd_names, overwrite)

    def _write(  # noqa: PLR0913
        self,
        document: TaskQueueDocument,
        source: PlanSource,
        prd_names: list[str],
        overwrite: bool,
        *,
        reason: str | None = None,
    ) -> PlanResult:
        now = self._clock()
        for task in document.tasks:
            task.created_at = now
        if not self.queue.initialize(document, overwrite=overwrite):
            raise TaskQueueError(f"Task queue already exists at {self.queue.path}")
        logger.info(
            "Task queue written to %s: source=%s tasks=%s",
            self.queue.path,
            source.value,
            len(document.tasks),
        )
        return PlanResult(
            source=source,
            path=self.queue.path,
            tasks=document.tasks,
            prd_names=prd_names,
            reason=reason,
        )
