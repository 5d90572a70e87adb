"""Controllers for agent-duo CLI commands."""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_duo.config import Settings
from agent_duo.orchestrator.backend import CliAgentGateway
from agent_duo.orchestrator.manager import ManagerLoop
from agent_duo.orchestrator.models import ProcessRole, Task, TaskStatus
from agent_duo.orchestrator.planning import PlanSource, TaskPlanner
from agent_duo.orchestrator.queue import TaskQueue
from agent_duo.orchestrator.supervisor import ProcessState, Supervisor
from agent_duo.orchestrator.worker import WorkerLoop

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(slots=True)
class StartCommand:
    """CLI input for launching both loops."""

    root: Path | None
    max_iterations: int | None
    worker_model: str | None
    manager_model: str | None
    review_interval: float | None
    no_manager: bool


@dataclass(slots=True)
class InstanceCommand:
    """CLI input for commands that only need the instance root."""

    root: Path | None


@dataclass(slots=True)
class LogsCommand:
    """CLI input for log tailing."""

    root: Path | None
    lines: int


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for operator task creation."""

    root: Path | None
    title: str
    description: str
    acceptance_criteria: str
    dependencies: tuple[str, ...]
    task_id: str | None
    estimated_iterations: int | None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    root: Path | None
    status: str | None


@dataclass(slots=True)
class TaskSetStatusCommand:
    """CLI input for operator status edits."""

    root: Path | None
    task_id: str
    status: str


@dataclass(slots=True)
class TaskRemoveCommand:
    """CLI input for operator task removal."""

    root: Path | None
    task_id: str


@dataclass(slots=True)
class TaskPlanCommand:
    """CLI input for turning PRD files into the task queue."""

    root: Path | None
    model: str | None
    force: bool


@dataclass(slots=True)
class LoopResult:
    """Lines to print plus whether the loop ended in a failure state."""

    lines: list[str]
    success: bool


class AgentDuoCliController:
    """Coordinates supervisor, loop and task queue CLI operations."""

    def start(self, command: StartCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        if command.max_iterations is not None:
            settings.worker.max_iterations = command.max_iterations
        if command.worker_model:
            settings.worker.model = command.worker_model
        if command.manager_model:
            settings.manager.model = command.manager_model
        if command.review_interval is not None:
            settings.manager.review_interval_seconds = command.review_interval
        if command.no_manager:
            settings.supervisor.no_manager = True

        records = Supervisor(settings).start()
        lines = [f"Instance: {settings.paths.root}"]
        lines.extend(
            f"{record.role.value.capitalize()} started (PID: {record.pid})" for record in records
        )
        lines.append(
            "Config: "
            f"worker_model={settings.worker.model} "
            f"manager_model={settings.manager.model} "
            f"max_iterations={settings.worker.max_iterations} "
            f"review_interval={settings.manager.review_interval_seconds:g}s "
            f"manager={'off' if settings.supervisor.no_manager else 'on'}",
        )
        return lines

    def stop(self, command: InstanceCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        lines: list[str] = []
        for result in Supervisor(settings).stop():
            name = result.role.value.capitalize()
            if not result.was_running:
                lines.append(f"{name} not running")
            elif result.forced:
                lines.append(f"{name} force killed (PID: {result.pid})")
            else:
                lines.append(f"{name} stopped (PID: {result.pid})")
        return lines

    def status(self, command: InstanceCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        report = Supervisor(settings).status()

        lines = ["=== Agent Duo Status ===", "", "Worker:"]
        lines.append(f"  Process: {_process_line(report.worker)}")
        lines.append(f"  Status: {report.worker.status}")
        iteration = f"{report.iteration}"
        if report.max_iterations is not None:
            iteration += f"/{report.max_iterations}"
        lines.append(f"  Iteration: {iteration}")
        lines.append(f"  Current task: {report.current_task or '-'}")
        if report.worker_error:
            lines.append(f"  Last error: {report.worker_error}")

        lines.extend(["", "Manager:"])
        lines.append(f"  Process: {_process_line(report.manager)}")
        lines.append(f"  Status: {report.manager.status}")
        lines.append(f"  Reviews: {report.review_count}")
        lines.append(f"  Last reviewed iteration: {report.last_reviewed}")
        lines.append(
            "  Pending review: "
            f"{report.pending_review if report.pending_review is not None else '-'}",
        )

        lines.extend(["", "Tasks:"])
        if report.counts is None:
            lines.append(f"  No task queue found at {settings.paths.tasks_file}")
        else:
            lines.append(f"  Total: {report.counts.total}")
            lines.append(f"  Completed: {report.counts.completed}")
            lines.append(f"  In progress: {report.counts.in_progress}")
            lines.append(f"  Pending: {report.counts.pending}")
            if report.counts.blocked:
                lines.append(f"  Blocked: {report.counts.blocked}")

        lines.extend(["", "Skills:", f"  Count: {len(report.skill_names)}"])
        lines.extend(f"  - {name}" for name in report.skill_names)
        return lines

    def clean(self, command: InstanceCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        stopped = [
            result.role.value for result in Supervisor(settings).clean() if result.was_running
        ]
        lines = [f"Stopped: {', '.join(stopped)}"] if stopped else []
        lines.append(f"Clean complete: state, reviews and logs reset under {settings.paths.root}")
        return lines

    def logs(self, command: LogsCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        lines = Supervisor(settings).tail_logs(lines=command.lines)
        return lines or [f"No logs found in {settings.paths.logs_dir}"]

    def follow_logs(self, command: InstanceCommand, *, poll_seconds: float = 0.5) -> Iterator[str]:
        """Yield lines appended to any top-level log file until interrupted."""

        settings = Settings.from_env(root=command.root)
        supervisor = Supervisor(settings)
        offsets = {path: path.stat().st_size for path in supervisor.log_files()}
        while True:
            for path in supervisor.log_files():
                offset = offsets.get(path, 0)
                size = path.stat().st_size
                if size < offset:
                    offset = 0
                if size == offset:
                    offsets[path] = offset
                    continue
                with path.open("r", encoding="utf-8", errors="replace") as handle:
                    handle.seek(offset)
                    chunk = handle.read()
                    offsets[path] = handle.tell()
                for line in chunk.splitlines():
                    yield f"[{path.stem}] {line}"
            time.sleep(poll_seconds)

    def run_worker(self, command: InstanceCommand) -> LoopResult:
        settings = Settings.from_env(root=command.root)
        settings.validate()
        configure_process_logging(settings.paths.logs_dir, ProcessRole.WORKER)
        worker = WorkerLoop(
            paths=settings.paths,
            settings=settings.worker,
            gateway=CliAgentGateway(settings.gateway.command_template),
            gateway_settings=settings.gateway,
        )
        summary = worker.run_loop()
        lines = [
            "Worker summary: "
            f"iterations={summary.iterations} "
            f"completed_tasks={','.join(summary.completed_tasks) or '-'} "
            f"stop_reason={summary.stop_reason.value if summary.stop_reason else '-'}",
        ]
        if summary.error:
            lines.append(f"Worker error: {summary.error}")
        return LoopResult(lines=lines, success=not summary.failed)

    def run_manager(self, command: InstanceCommand) -> LoopResult:
        settings = Settings.from_env(root=command.root)
        settings.validate()
        configure_process_logging(settings.paths.logs_dir, ProcessRole.MANAGER)
        manager = ManagerLoop(
            paths=settings.paths,
            settings=settings.manager,
            gateway=CliAgentGateway(settings.gateway.command_template),
            gateway_settings=settings.gateway,
        )
        summary = manager.run_loop()
        return LoopResult(
            lines=[
                "Manager summary: "
                f"reviewed={summary.reviewed} rate_limited={summary.rate_limited} "
                f"failed={summary.failed}",
                f"Final report: {summary.final_report}",
            ],
            success=True,
        )

    def task_add(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        task = _queue(settings).add_task(
            title=command.title,
            description=command.description,
            acceptance_criteria=command.acceptance_criteria,
            dependencies=command.dependencies,
            estimated_iterations=command.estimated_iterations,
            task_id=command.task_id,
        )
        return [f"Task added: id={task.id} status={task.status.value} title={task.title}"]

    def task_list(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        status = TaskStatus(command.status) if command.status else None
        tasks = [
            task for task in _queue(settings).tasks() if status is None or task.status == status
        ]
        if not tasks:
            return ["No tasks found."]
        return [_task_line(task) for task in tasks]

    def task_set_status(self, command: TaskSetStatusCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        task = _queue(settings).set_status(command.task_id, TaskStatus(command.status))
        return [f"Task {task.id} status set to {task.status.value}"]

    def task_remove(self, command: TaskRemoveCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        task = _queue(settings).remove(command.task_id)
        return [f"Task removed: id={task.id} title={task.title}"]

    def task_init(self, command: InstanceCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        settings.paths.ensure()
        if _queue(settings).init_example():
            return [f"Example task queue written to {settings.paths.tasks_file}"]
        return [f"Task queue already exists at {settings.paths.tasks_file}"]

    def task_plan(self, command: TaskPlanCommand) -> list[str]:
        settings = Settings.from_env(root=command.root)
        settings.validate()
        model = command.model or settings.planner.model
        planner = TaskPlanner(
            paths=settings.paths,
            gateway=CliAgentGateway(settings.gateway.command_template),
            model=model,
            gateway_settings=settings.gateway,
        )
        result = planner.plan(overwrite=command.force)

        if result.source == PlanSource.EXAMPLE:
            lines = [f"No PRD files found in {settings.paths.prds_dir}, example queue written."]
        elif result.source == PlanSource.FALLBACK:
            lines = [
                f"Planning from {len(result.prd_names)} PRD file(s) failed: {result.reason}",
                "Template queue written; edit it with your tasks.",
            ]
        else:
            lines = [f"Planned {len(result.tasks)} task(s) from {', '.join(result.prd_names)}."]
        lines.append(f"Task queue: {result.path}")
        lines.extend(_task_line(task) for task in result.tasks[:3])
        return lines


def configure_process_logging(logs_dir: Path, role: ProcessRole) -> Path:
    """Log to a timestamped file under `logs/` and to stderr."""

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / f"{role.value}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
        force=True,
    )
    return log_file


def _queue(settings: Settings) -> TaskQueue:
    return TaskQueue(settings.paths.tasks_file, policy=settings.worker.task_policy)


def _process_line(state: ProcessState) -> str:
    if state.pid is None:
        return "not running"
    if state.alive:
        return f"running (PID: {state.pid})"
    return f"stopped (stale PID {state.pid})"


def _task_line(task: Task) -> str:
    line = f"[{task.status.value}] Task {task.id}: {task.title}"
    if task.dependencies:
        line += f" (depends on: {', '.join(task.dependencies)})"
    if task.actual_iterations:
        line += f" iterations={task.actual_iterations}"
    return line
