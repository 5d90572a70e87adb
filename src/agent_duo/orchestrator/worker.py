"""Worker loop: implements queued tasks one iteration at a time."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from agent_duo.config import GatewaySettings, InstancePaths, WorkerSettings
from agent_duo.orchestrator.backend import AgentGateway, GatewayRequest, GatewayResult
from agent_duo.orchestrator.context import WorkerContext, build_worker_prompt
from agent_duo.orchestrator.lifecycle import StoppableLoop
from agent_duo.orchestrator.models import Task, TaskStatus, WorkerStatus
from agent_duo.orchestrator.queue import TaskQueue
from agent_duo.orchestrator.skills import SkillLibrary
from agent_duo.orchestrator.state import StateStore

logger = logging.getLogger(__name__)


class WorkerStopReason(str, Enum):
    """Why the Worker loop returned."""

    QUEUE_EMPTY = "queue_empty"
    MAX_ITERATIONS = "max_iterations"
    STOP_REQUESTED = "stop_requested"
    BLOCKED = "blocked"
    GATEWAY_FAILURE = "gateway_failure"
    ERROR = "error"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    iterations: int = 0
    completed_tasks: list[str] = field(default_factory=list)
    stop_reason: WorkerStopReason | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.stop_reason in {
            WorkerStopReason.BLOCKED,
            WorkerStopReason.GATEWAY_FAILURE,
            WorkerStopReason.ERROR,
        }


@dataclass(slots=True)
class IterationResult:
    """Outcome of one Worker iteration."""

    iteration: int
    task_id: str
    gateway: GatewayResult
    task_completed: bool = False


class WorkerLoop(StoppableLoop):
    """Pulls the next eligible task, invokes the agent and persists progress.

    All progress lives on disk (queue document, iteration counter, completion
    markers), so a restarted Worker resumes the task left `in_progress`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        paths: InstancePaths,
        settings: WorkerSettings,
        gateway: AgentGateway,
        gateway_settings: GatewaySettings | None = None,
        state: StateStore | None = None,
        queue: TaskQueue | None = None,
    ) -> None:
        super().__init__()
        self.paths = paths
        self.settings = settings
        self.gateway = gateway
        self.gateway_settings = gateway_settings or GatewaySettings()
        self.state = state or StateStore(paths.state_dir)
        self.queue = queue or TaskQueue(paths.tasks_file, policy=settings.task_policy)
        self.skills = SkillLibrary(paths.skills_dir)

    def run_loop(self) -> WorkerRunSummary:
        """Run iterations until the queue is exhausted, the ceiling is hit or a stop."""

        summary = WorkerRunSummary()
        self.paths.ensure()
        self.state.clear_worker_error()
        self.state.set_max_iterations(self.settings.max_iterations)
        self.state.set_worker_status(WorkerStatus.RUNNING)
        logger.info(
            "Worker started: model=%s max_iterations=%s iteration=%s",
            self.settings.model,
            self.settings.max_iterations,
            self.state.iteration(),
        )

        with self._signal_handlers():
            try:
                summary.stop_reason = self._loop(summary)
            except Exception as error:
                logger.exception("Worker iteration crashed")
                summary.stop_reason = WorkerStopReason.ERROR
                summary.error = f"{type(error).__name__}: {error}"

        self._persist_exit(summary)
        return summary

    def _loop(self, summary: WorkerRunSummary) -> WorkerStopReason:
        while True:
            if self.stop_requested:
                return WorkerStopReason.STOP_REQUESTED

            iteration = self.state.iteration()
            if iteration >= self.settings.max_iterations:
                logger.info("Max iterations reached (%s)", self.settings.max_iterations)
                return WorkerStopReason.MAX_ITERATIONS

            task = self.queue.next_eligible()
            if task is None:
                unfinished = self.queue.unfinished()
                if unfinished:
                    stuck = ", ".join(f"{item.id} ({item.status.value})" for item in unfinished)
                    summary.error = f"No eligible task while tasks remain unfinished: {stuck}"
                    logger.warning("No eligible task, unfinished tasks: %s", stuck)
                    return WorkerStopReason.BLOCKED
                logger.info("All tasks completed")
                return WorkerStopReason.QUEUE_EMPTY

            result = self.run_iteration(task, iteration=iteration + 1)
            if result.gateway.cancelled:
                return WorkerStopReason.STOP_REQUESTED
            if not result.gateway.ok:
                summary.error = result.gateway.reason or result.gateway.outcome.value
                logger.error(
                    "Agent call failed on iteration %s (task %s): %s",
                    result.iteration,
                    result.task_id,
                    summary.error,
                )
                return WorkerStopReason.GATEWAY_FAILURE

            summary.iterations += 1
            if result.task_completed:
                summary.completed_tasks.append(result.task_id)
            self._sleep_with_stop(self.settings.iteration_delay_seconds)

    def run_iteration(self, task: Task, *, iteration: int) -> IterationResult:
        """Execute one iteration on `task`; counters advance only on success."""

        task = self.queue.transition(task.id, TaskStatus.IN_PROGRESS)
        self.state.set_current_task(task.id)
        logger.info("Iteration %s: working on task %s: %s", iteration, task.id, task.title)

        marker = self.state.completion_marker(task.id)
        prompt = build_worker_prompt(
            WorkerContext(
                iteration=iteration,
                task=task,
                all_tasks=self.queue.tasks(),
                skills=self.skills.render_context(
                    max_chars=self.settings.max_skill_context_chars,
                ),
                progress_notes=_read_optional(self.paths.progress_file),
                directive=self.state.consume_directive(),
                project_path=self.paths.project_path,
                progress_file=self.paths.progress_file,
                completion_marker=marker,
            ),
        )
        gateway_result = self.gateway.invoke(
            GatewayRequest(
                model=self.settings.model,
                prompt=prompt,
                workdir=self.paths.project_path,
                transcript_path=self.transcript_path(iteration, task.id),
                timeout_seconds=self.gateway_settings.timeout_seconds,
                shutdown_requested=lambda: self.stop_requested,
                graceful_shutdown_seconds=self.gateway_settings.graceful_shutdown_seconds,
            ),
        )
        result = IterationResult(iteration=iteration, task_id=task.id, gateway=gateway_result)
        if not gateway_result.ok:
            return result

        if marker.exists():
            self.queue.transition(task.id, TaskStatus.COMPLETED)
            marker.unlink(missing_ok=True)
            result.task_completed = True
            logger.info("Task %s completed", task.id)
        else:
            logger.info("Task %s still in progress after iteration %s", task.id, iteration)

        self.queue.record_iteration(task.id)
        self.state.set_iteration(iteration)
        if iteration % self.settings.review_every == 0:
            self.state.signal_review(iteration)
            logger.info("Signalled review for iteration %s", iteration)
        return result

    def transcript_path(self, iteration: int, task_id: str) -> Path:
        return self.paths.transcripts_dir / f"iteration_{iteration}_task_{task_id}.md"

    def _on_stop_requested(self) -> None:
        self.state.set_worker_status(WorkerStatus.STOPPING)

    def _persist_exit(self, summary: WorkerRunSummary) -> None:
        if summary.error is not None:
            self.state.set_worker_error(summary.error)
        status = (
            WorkerStatus.COMPLETED
            if summary.stop_reason == WorkerStopReason.QUEUE_EMPTY
            else WorkerStatus.STOPPED
        )
        self.state.set_worker_status(status)
        logger.info(
            "Worker exited: reason=%s iterations=%s status=%s",
            summary.stop_reason.value if summary.stop_reason else "-",
            summary.iterations,
            status.value,
        )


def _read_optional(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")
