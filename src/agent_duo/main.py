"""CLI entrypoint for agent-duo."""

from pathlib import Path

import rich_click as click

from agent_duo import __version__
from agent_duo.orchestrator.contracts import TaskQueueError
from agent_duo.orchestrator.controllers import (
    AgentDuoCliController,
    InstanceCommand,
    LogsCommand,
    StartCommand,
    TaskAddCommand,
    TaskListCommand,
    TaskPlanCommand,
    TaskRemoveCommand,
    TaskSetStatusCommand,
)
from agent_duo.orchestrator.models import TaskStatus
from agent_duo.orchestrator.supervisor import SupervisorError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentDuoCliController()
TASK_STATUS_CHOICES = [status.value for status in TaskStatus]


@click.group()
@click.version_option(version=__version__, prog_name="agent-duo")
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Instance directory. If omitted, AGENT_DUO_ROOT or the current directory is used.",
)
@click.pass_context
def agent_duo(ctx: click.Context, root: Path | None) -> None:
    """Worker/Manager agent orchestration CLI."""

    ctx.obj = root


@agent_duo.command("start")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Worker iteration ceiling. If omitted, AGENT_DUO_MAX_ITERATIONS is used.",
)
@click.option("--worker-model", default=None, help="Model identifier for the Worker agent.")
@click.option("--manager-model", default=None, help="Model identifier for the Manager agent.")
@click.option(
    "--review-interval",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds between Manager polls of the review signal.",
)
@click.option("--no-manager", is_flag=True, help="Run the Worker without review oversight.")
@click.pass_obj
def start(  # noqa: PLR0913
    root: Path | None,
    max_iterations: int | None,
    worker_model: str | None,
    manager_model: str | None,
    review_interval: float | None,
    no_manager: bool,
) -> None:
    """Launch the Worker and, after a short stagger, the Manager."""

    _emit_lines(
        _guarded(
            CONTROLLER.start,
            StartCommand(
                root=root,
                max_iterations=max_iterations,
                worker_model=worker_model,
                manager_model=manager_model,
                review_interval=review_interval,
                no_manager=no_manager,
            ),
        ),
    )


@agent_duo.command("stop")
@click.pass_obj
def stop(root: Path | None) -> None:
    """Terminate both loops (SIGTERM, grace period, then SIGKILL)."""

    _emit_lines(_guarded(CONTROLLER.stop, InstanceCommand(root=root)))


@agent_duo.command("status")
@click.pass_obj
def status(root: Path | None) -> None:
    """Show liveness, iteration, reviews, task counts and skills from persisted state."""

    _emit_lines(_guarded(CONTROLLER.status, InstanceCommand(root=root)))


@agent_duo.command("logs")
@click.option(
    "--lines",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="How many trailing lines to show per log file.",
)
@click.option("--follow", is_flag=True, help="Keep printing new log lines until interrupted.")
@click.pass_obj
def logs(root: Path | None, lines: int, follow: bool) -> None:
    """Show recent Worker and Manager log output."""

    _emit_lines(_guarded(CONTROLLER.logs, LogsCommand(root=root, lines=lines)))
    if not follow:
        return
    try:
        for line in CONTROLLER.follow_logs(InstanceCommand(root=root)):
            click.echo(line)
    except KeyboardInterrupt:
        return


@agent_duo.command("clean")
@click.pass_obj
def clean(root: Path | None) -> None:
    """Stop both loops and reset coordination state, reviews and logs."""

    _emit_lines(_guarded(CONTROLLER.clean, InstanceCommand(root=root)))


@agent_duo.command("worker")
@click.pass_obj
def worker(root: Path | None) -> None:
    """Run the Worker loop in the foreground."""

    result = _guarded(CONTROLLER.run_worker, InstanceCommand(root=root))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Worker stopped on a fatal error.")


@agent_duo.command("manager")
@click.pass_obj
def manager(root: Path | None) -> None:
    """Run the Manager loop in the foreground."""

    result = _guarded(CONTROLLER.run_manager, InstanceCommand(root=root))
    _emit_lines(result.lines)


@agent_duo.group()
def task() -> None:
    """Task queue commands."""


@task.command("add")
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="What the task should implement.")
@click.option("--acceptance", default="", help="Acceptance criteria.")
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Id of a task this one depends on. Can be repeated.",
)
@click.option("--task-id", default=None, help="Explicit id. Defaults to the next numeric id.")
@click.option(
    "--estimate",
    type=click.IntRange(min=1),
    default=None,
    help="Estimated iterations.",
)
@click.pass_obj
def task_add(  # noqa: PLR0913
    root: Path | None,
    title: str,
    description: str,
    acceptance: str,
    depends_on: tuple[str, ...],
    task_id: str | None,
    estimate: int | None,
) -> None:
    """Append a pending task to the queue."""

    _emit_lines(
        _guarded(
            CONTROLLER.task_add,
            TaskAddCommand(
                root=root,
                title=title,
                description=description,
                acceptance_criteria=acceptance,
                dependencies=depends_on,
                task_id=task_id,
                estimated_iterations=estimate,
            ),
        ),
    )


@task.command("list")
@click.option(
    "--status",
    type=click.Choice(TASK_STATUS_CHOICES),
    default=None,
    help="Optional status filter.",
)
@click.pass_obj
def task_list(root: Path | None, status: str | None) -> None:
    """List tasks in queue order."""

    _emit_lines(_guarded(CONTROLLER.task_list, TaskListCommand(root=root, status=status)))


@task.command("set-status")
@click.option("--task-id", required=True, help="Task id.")
@click.option("--status", type=click.Choice(TASK_STATUS_CHOICES), required=True)
@click.pass_obj
def task_set_status(root: Path | None, task_id: str, status: str) -> None:
    """Operator edit of a task status, including reverse moves."""

    _emit_lines(
        _guarded(
            CONTROLLER.task_set_status,
            TaskSetStatusCommand(root=root, task_id=task_id, status=status),
        ),
    )


@task.command("remove")
@click.option("--task-id", required=True, help="Task id.")
@click.pass_obj
def task_remove(root: Path | None, task_id: str) -> None:
    """Remove a task from the queue."""

    _emit_lines(_guarded(CONTROLLER.task_remove, TaskRemoveCommand(root=root, task_id=task_id)))


@task.command("plan")
@click.option(
    "--model",
    default=None,
    help="Model for planning. If omitted, AGENT_DUO_PLANNER_MODEL is used.",
)
@click.option("--force", is_flag=True, help="Replace an existing task queue.")
@click.pass_obj
def task_plan(root: Path | None, model: str | None, force: bool) -> None:
    """Break the PRD files in `prds/` into a task queue through the agent.

    Without PRD files the example queue is written.  If the agent call fails or
    its reply is unusable, a one-task template is written for manual editing.
    """

    _emit_lines(
        _guarded(CONTROLLER.task_plan, TaskPlanCommand(root=root, model=model, force=force)),
    )


@task.command("init")
@click.pass_obj
def task_init(root: Path | None) -> None:
    """Write an example task queue if none exists."""

    _emit_lines(_guarded(CONTROLLER.task_init, InstanceCommand(root=root)))


def _guarded(action, command):
    try:
        return action(command)
    except (SupervisorError, TaskQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_duo()
