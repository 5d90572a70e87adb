"""Process supervision for the Worker and Manager loops."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import sys
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from agent_duo.config import Settings
from agent_duo.orchestrator.models import LivenessRecord, ProcessRole, TaskCounts, WorkerStatus
from agent_duo.orchestrator.queue import TaskQueue
from agent_duo.orchestrator.skills import SkillLibrary
from agent_duo.orchestrator.state import StateStore, utc_now

logger = logging.getLogger(__name__)

_STOP_POLL_SECONDS = 0.1


class SupervisorError(RuntimeError):
    """Misconfiguration detected before any process is launched."""


def pid_alive(pid: int) -> bool:
    """Check a process id; a dead or reaped id is not alive."""

    if pid <= 0:
        return False
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass
    else:
        if reaped == pid:
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass(slots=True)
class ProcessState:
    """Liveness of one supervised loop plus its last persisted status."""

    role: ProcessRole
    pid: int | None
    alive: bool
    status: str
    stale: bool = False


@dataclass(slots=True)
class StatusReport:
    """Snapshot assembled from persisted documents only."""

    worker: ProcessState
    manager: ProcessState
    iteration: int
    max_iterations: int | None
    current_task: str | None
    worker_error: str | None
    review_count: int
    last_reviewed: int
    pending_review: int | None
    counts: TaskCounts | None
    skill_names: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StopResult:
    role: ProcessRole
    pid: int | None
    was_running: bool
    forced: bool = False


class Supervisor:
    """Start, stop, inspect and reset one orchestrated instance."""

    def __init__(
        self,
        settings: Settings,
        *,
        python: str = sys.executable,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.paths = settings.paths
        self.state = StateStore(self.paths.state_dir)
        self.queue = TaskQueue(self.paths.tasks_file, policy=settings.worker.task_policy)
        self.skills = SkillLibrary(self.paths.skills_dir)
        self._python = python
        self._sleep = sleep

    def start(self) -> list[LivenessRecord]:
        """Validate the instance, then launch the Worker and (after a stagger) the Manager."""

        self.settings.validate()
        if not self.queue.exists():
            raise SupervisorError(
                f"No task queue at {self.paths.tasks_file}. "
                "Add tasks with `agent-duo task add` or `agent-duo task init`.",
            )
        if self.queue.counts().total == 0:
            raise SupervisorError(f"Task queue {self.paths.tasks_file} has no tasks.")

        roles = [ProcessRole.WORKER]
        if not self.settings.supervisor.no_manager:
            roles.append(ProcessRole.MANAGER)
        for role in roles:
            record = self.live_record(role)
            if record is not None:
                raise SupervisorError(
                    f"{role.value.capitalize()} already running (PID: {record.pid})",
                )

        self.paths.ensure()
        # A status left by the previous run must not end the new Manager early.
        self.state.clear_worker_status()
        records = [self._launch(ProcessRole.WORKER)]
        if ProcessRole.MANAGER in roles:
            self._sleep(self.settings.supervisor.start_stagger_seconds)
            records.append(self._launch(ProcessRole.MANAGER))
        else:
            logger.info("Manager disabled, running Worker without review oversight")
        return records

    def stop(self) -> list[StopResult]:
        """SIGTERM both loops, wait the grace period, then SIGKILL survivors."""

        results: list[StopResult] = []
        for role in (ProcessRole.WORKER, ProcessRole.MANAGER):
            record = self.state.read_liveness(role)
            if record is None or not pid_alive(record.pid):
                results.append(
                    StopResult(
                        role=role,
                        pid=record.pid if record else None,
                        was_running=False,
                    ),
                )
                continue
            _signal(record.pid, signal.SIGTERM)
            logger.info("Sent SIGTERM to %s (PID: %s)", role.value, record.pid)
            results.append(StopResult(role=role, pid=record.pid, was_running=True))

        running = [result for result in results if result.was_running]
        deadline = time.monotonic() + self.settings.supervisor.stop_grace_seconds
        while running and time.monotonic() < deadline:
            running = [result for result in running if pid_alive(result.pid or 0)]
            if running:
                self._sleep(_STOP_POLL_SECONDS)

        for result in running:
            if result.pid is None or not pid_alive(result.pid):
                continue
            _signal(result.pid, signal.SIGKILL)
            result.forced = True
            logger.warning("Force killed %s (PID: %s)", result.role.value, result.pid)
            if result.role == ProcessRole.WORKER:
                self.state.set_worker_status(WorkerStatus.STOPPED)

        for result in results:
            self.state.clear_liveness(result.role)
        return results

    def status(self) -> StatusReport:
        counts = self.queue.counts() if self.queue.exists() else None
        return StatusReport(
            worker=self._process_state(ProcessRole.WORKER, self.state.worker_status().value),
            manager=self._process_state(ProcessRole.MANAGER, self.state.manager_status().value),
            iteration=self.state.iteration(),
            max_iterations=self.state.max_iterations(),
            current_task=self.state.current_task(),
            worker_error=self.state.worker_error(),
            review_count=self.state.review_count(),
            last_reviewed=self.state.last_reviewed(),
            pending_review=self.state.review_signal(),
            counts=counts,
            skill_names=self.skills.names(),
        )

    def clean(self) -> list[StopResult]:
        """Stop both loops and reset coordination state, reviews and logs.

        The task queue, skills and project code are kept.
        """

        results = self.stop()
        self.state.reset()
        for directory in (self.paths.reviews_dir, self.paths.logs_dir):
            if directory.exists():
                shutil.rmtree(directory)
        self.paths.ensure()
        logger.info("Instance state reset under %s", self.paths.root)
        return results

    def live_record(self, role: ProcessRole) -> LivenessRecord | None:
        """Liveness record whose process still responds, or None when absent or stale."""

        record = self.state.read_liveness(role)
        if record is None or not pid_alive(record.pid):
            return None
        return record

    def log_files(self) -> list[Path]:
        logs_dir = self.paths.logs_dir
        if not logs_dir.exists():
            return []
        return sorted(path for path in logs_dir.glob("*.log") if path.is_file())

    def tail_logs(self, *, lines: int) -> list[str]:
        """Last `lines` lines of every top-level log file, with a header per file."""

        output: list[str] = []
        for path in self.log_files():
            with path.open("r", encoding="utf-8", errors="replace") as handle:
                tail = deque(handle, maxlen=lines)
            output.append(f"==> {path.name} <==")
            output.extend(line.rstrip("\n") for line in tail)
        return output

    def _process_state(self, role: ProcessRole, status: str) -> ProcessState:
        record = self.state.read_liveness(role)
        if record is None:
            return ProcessState(role=role, pid=None, alive=False, status=status)
        alive = pid_alive(record.pid)
        return ProcessState(
            role=role,
            pid=record.pid,
            alive=alive,
            status=status,
            stale=not alive,
        )

    def _launch(self, role: ProcessRole) -> LivenessRecord:
        log_path = self.paths.logs_dir / f"{role.value}_stdout.log"
        env = os.environ.copy()
        env.update(self.settings.to_env())
        command = [
            self._python,
            "-m",
            "agent_duo.main",
            "--root",
            str(self.paths.root),
            role.value,
        ]
        with log_path.open("a", encoding="utf-8") as log_handle:
            process = subprocess.Popen(  # noqa: S603
                command,
                cwd=self.paths.root,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                close_fds=True,
                start_new_session=True,
            )
        record = LivenessRecord(role=role, pid=process.pid, started_at=utc_now())
        self.state.write_liveness(record)
        logger.info("%s started (PID: %s)", role.value.capitalize(), process.pid)
        return record


def _signal(pid: int, signum: signal.Signals) -> None:
    try:
        os.kill(pid, signum)
    except ProcessLookupError:
        return
