from __future__ import annotations

import allure
from gateways import ScriptedGateway, failure, success

from agent_duo.config import Settings
from agent_duo.orchestrator.backend import GatewayRequest, GatewayResult
from agent_duo.orchestrator.models import EligibilityPolicy, Task, TaskStatus, WorkerStatus
from agent_duo.orchestrator.queue import TaskQueue
from agent_duo.orchestrator.state import StateStore
from agent_duo.orchestrator.worker import WorkerLoop, WorkerStopReason

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Worker Loop"),
]


def _worker(settings: Settings, gateway: ScriptedGateway) -> WorkerLoop:
    return WorkerLoop(
        paths=settings.paths,
        settings=settings.worker,
        gateway=gateway,
        gateway_settings=settings.gateway,
    )


def test_single_task_completes_in_one_iteration(settings: Settings, write_tasks) -> None:
    write_tasks(Task(id="1", title="Setup"))
    settings.worker.max_iterations = 5
    gateway = ScriptedGateway([success()])

    summary = _worker(settings, gateway).run_loop()

    state = StateStore(settings.paths.state_dir)
    queue = TaskQueue(settings.paths.tasks_file)
    assert gateway.calls == 1
    assert queue.get("1").status == TaskStatus.COMPLETED
    assert queue.get("1").actual_iterations == 1
    assert state.iteration() == 1
    assert state.worker_status() == WorkerStatus.COMPLETED
    assert state.max_iterations() == 5
    assert summary.stop_reason == WorkerStopReason.QUEUE_EMPTY
    assert summary.iterations == 1
    assert summary.completed_tasks == ["1"]
    assert not state.completion_marker("1").exists()
    request = gateway.requests[0]
    assert request.model == settings.worker.model
    assert request.workdir == settings.paths.project_path
    assert request.transcript_path.name == "iteration_1_task_1.md"


def test_all_completed_queue_never_invokes_gateway(settings: Settings, write_tasks) -> None:
    write_tasks(
        Task(id="1", title="Done", status=TaskStatus.COMPLETED),
        Task(id="2", title="Also done", status=TaskStatus.COMPLETED),
    )
    gateway = ScriptedGateway()

    summary = _worker(settings, gateway).run_loop()

    assert gateway.calls == 0
    assert summary.stop_reason == WorkerStopReason.QUEUE_EMPTY
    assert StateStore(settings.paths.state_dir).worker_status() == WorkerStatus.COMPLETED


def test_unmet_dependency_stops_worker_without_reporting_completion(
    settings: Settings,
    write_tasks,
) -> None:
    write_tasks(Task(id="1", title="Needs a missing task", dependencies=["99"]))
    settings.worker.task_policy = EligibilityPolicy.DEPENDENCIES
    gateway = ScriptedGateway()

    summary = _worker(settings, gateway).run_loop()

    state = StateStore(settings.paths.state_dir)
    assert gateway.calls == 0
    assert summary.stop_reason == WorkerStopReason.BLOCKED
    assert summary.failed is True
    assert state.worker_status() == WorkerStatus.STOPPED
    assert "1 (pending)" in (state.worker_error() or "")
    assert TaskQueue(settings.paths.tasks_file).get("1").status == TaskStatus.PENDING


def test_only_blocked_tasks_left_is_not_completion(settings: Settings, write_tasks) -> None:
    write_tasks(
        Task(id="1", title="Done", status=TaskStatus.COMPLETED),
        Task(id="2", title="Waiting on operator", status=TaskStatus.BLOCKED),
    )
    gateway = ScriptedGateway()

    summary = _worker(settings, gateway).run_loop()

    state = StateStore(settings.paths.state_dir)
    assert gateway.calls == 0
    assert summary.stop_reason == WorkerStopReason.BLOCKED
    assert state.worker_status() == WorkerStatus.STOPPED
    assert "2 (blocked)" in (state.worker_error() or "")


def test_task_without_marker_stays_in_progress_until_ceiling(
    settings: Settings,
    write_tasks,
) -> None:
    write_tasks(Task(id="1", title="Big task"), Task(id="2", title="Next"))
    settings.worker.max_iterations = 3
    gateway = ScriptedGateway([success()], complete_tasks=False)

    summary = _worker(settings, gateway).run_loop()

    state = StateStore(settings.paths.state_dir)
    queue = TaskQueue(settings.paths.tasks_file)
    assert gateway.calls == 3
    assert summary.stop_reason == WorkerStopReason.MAX_ITERATIONS
    assert queue.get("1").status == TaskStatus.IN_PROGRESS
    assert queue.get("1").actual_iterations == 3
    assert queue.get("2").status == TaskStatus.PENDING
    assert state.iteration() == 3
    assert state.worker_status() == WorkerStatus.STOPPED
    assert state.current_task() == "1"


def test_ceiling_uses_persisted_counter(settings: Settings, write_tasks) -> None:
    write_tasks(Task(id="1", title="Setup"))
    settings.worker.max_iterations = 4
    StateStore(settings.paths.state_dir).set_iteration(4)
    gateway = ScriptedGateway()

    summary = _worker(settings, gateway).run_loop()

    assert gateway.calls == 0
    assert summary.stop_reason == WorkerStopReason.MAX_ITERATIONS


def test_review_signal_written_on_cadence(settings: Settings, write_tasks) -> None:
    write_tasks(*(Task(id=str(n), title=f"Task {n}") for n in range(1, 6)))
    settings.worker.review_every = 2
    signals: list[int | None] = []
    state = StateStore(settings.paths.state_dir)

    def _observe(_: GatewayRequest) -> GatewayResult:
        signals.append(state.review_signal())
        return success()

    gateway = ScriptedGateway([_observe])

    _worker(settings, gateway).run_loop()

    # Signal as seen at the start of iterations 1..5.
    assert signals == [None, None, 2, 2, 4]
    assert state.review_signal() == 4
    assert state.iteration() == 5


def test_gateway_failure_is_fatal_and_persisted(settings: Settings, write_tasks) -> None:
    write_tasks(Task(id="1", title="Setup"), Task(id="2", title="Next"))
    gateway = ScriptedGateway([failure("agent exited with code 2: boom")])

    summary = _worker(settings, gateway).run_loop()

    state = StateStore(settings.paths.state_dir)
    assert gateway.calls == 1
    assert summary.stop_reason == WorkerStopReason.GATEWAY_FAILURE
    assert summary.failed is True
    assert state.worker_status() == WorkerStatus.STOPPED
    assert "boom" in (state.worker_error() or "")
    assert state.iteration() == 0
    assert TaskQueue(settings.paths.tasks_file).get("1").status == TaskStatus.IN_PROGRESS


def test_unexpected_exception_stops_loop_with_status(settings: Settings, write_tasks) -> None:
    write_tasks(Task(id="1", title="Setup"))

    def _explode(_: GatewayRequest) -> GatewayResult:
        raise RuntimeError("disk on fire")

    summary = _worker(settings, ScriptedGateway([_explode])).run_loop()

    state = StateStore(settings.paths.state_dir)
    assert summary.stop_reason == WorkerStopReason.ERROR
    assert state.worker_status() == WorkerStatus.STOPPED
    assert "disk on fire" in (state.worker_error() or "")


def test_restart_resumes_in_progress_task(settings: Settings, write_tasks) -> None:
    write_tasks(Task(id="1", title="Setup"), Task(id="2", title="Next"))
    settings.worker.max_iterations = 10
    _worker(settings, ScriptedGateway([failure()])).run_loop()
    queue = TaskQueue(settings.paths.tasks_file)
    started_at = queue.get("1").started_at
    assert queue.get("1").status == TaskStatus.IN_PROGRESS

    gateway = ScriptedGateway()
    summary = _worker(settings, gateway).run_loop()

    assert gateway.requests[0].transcript_path.name == "iteration_1_task_1.md"
    assert "Current Task (ID: 1)" in gateway.requests[0].prompt
    assert summary.completed_tasks == ["1", "2"]
    assert [task.id for task in queue.tasks()] == ["1", "2"]
    assert queue.get("1").started_at == started_at
    assert StateStore(settings.paths.state_dir).iteration() == 2


def test_directive_and_skills_reach_prompt_once(settings: Settings, write_tasks) -> None:
    write_tasks(Task(id="1", title="Setup"), Task(id="2", title="Next"))
    state = StateStore(settings.paths.state_dir)
    state.write_directive("Use dataclasses.")
    settings.paths.skills_dir.mkdir(parents=True, exist_ok=True)
    (settings.paths.skills_dir / "testing.md").write_text("Always add tests.", "utf-8")
    settings.paths.progress_file.write_text("Scaffold exists.", "utf-8")
    gateway = ScriptedGateway()

    _worker(settings, gateway).run_loop()

    first, second = (request.prompt for request in gateway.requests)
    assert "Use dataclasses." in first
    assert "Use dataclasses." not in second
    assert "Always add tests." in first
    assert "Scaffold exists." in first
    assert state.directive() is None


def test_stop_request_finishes_current_iteration_then_exits(
    settings: Settings,
    write_tasks,
) -> None:
    write_tasks(Task(id="1", title="Setup"), Task(id="2", title="Next"))
    holder: list[WorkerLoop] = []

    def _stop_during_call(_: GatewayRequest) -> GatewayResult:
        holder[0].request_stop(reason="SIGTERM")
        return success()

    worker = _worker(settings, ScriptedGateway([_stop_during_call]))
    holder.append(worker)

    summary = worker.run_loop()

    state = StateStore(settings.paths.state_dir)
    assert summary.stop_reason == WorkerStopReason.STOP_REQUESTED
    assert summary.completed_tasks == ["1"]
    assert state.iteration() == 1
    assert state.worker_status() == WorkerStatus.STOPPED


def test_cancelled_call_is_a_clean_stop(settings: Settings, write_tasks) -> None:
    write_tasks(Task(id="1", title="Setup"))
    cancelled = GatewayResult(
        outcome=failure().outcome,
        reason="agent call cancelled by shutdown request",
        cancelled=True,
    )

    summary = _worker(settings, ScriptedGateway([cancelled])).run_loop()

    state = StateStore(settings.paths.state_dir)
    assert summary.stop_reason == WorkerStopReason.STOP_REQUESTED
    assert summary.failed is False
    assert state.worker_error() is None
    assert state.iteration() == 0
