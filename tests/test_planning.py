from __future__ import annotations

import json
from datetime import UTC, datetime

import allure
import pytest
from gateways import ECHO_AGENT_COMMAND_TEMPLATE, ScriptedGateway, failure, success

from agent_duo.config import Settings
from agent_duo.orchestrator.backend import CliAgentGateway
from agent_duo.orchestrator.contracts import TaskQueueError, read_queue_document
from agent_duo.orchestrator.models import Task, TaskStatus
from agent_duo.orchestrator.planning import (
    PlanningError,
    PlanSource,
    TaskPlanner,
    parse_task_plan,
)

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("PRD Planning"),
]

_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _planner(settings: Settings, gateway) -> TaskPlanner:
    return TaskPlanner(
        paths=settings.paths,
        gateway=gateway,
        model="haiku",
        gateway_settings=settings.gateway,
        clock=lambda: _NOW,
    )


def _write_prd(settings: Settings, name: str, text: str) -> None:
    (settings.paths.prds_dir / name).write_text(text, "utf-8")


def _plan_reply(*tasks: dict) -> str:
    payload = {"projectName": "Shop", "description": "Online shop", "tasks": list(tasks)}
    return f"Sure, here you go:\n\n```json\n{json.dumps(payload)}\n```\nLet me know."


def test_parse_task_plan_resets_progress_fields() -> None:
    document = parse_task_plan(
        _plan_reply(
            {"id": 1, "title": "Catalog", "status": "completed", "actualIterations": 4},
            {"id": "2", "title": "Cart", "dependencies": ["1"]},
        ),
    )

    assert document.project_name == "Shop"
    assert [task.id for task in document.tasks] == ["1", "2"]
    assert all(task.status == TaskStatus.PENDING for task in document.tasks)
    assert document.tasks[0].actual_iterations == 0
    assert document.tasks[1].dependencies == ["1"]


@pytest.mark.parametrize(
    ("reply", "message"),
    [
        ("I could not do that.", "no JSON object"),
        (_plan_reply(), "no tasks"),
        (_plan_reply({"id": "1", "title": "A"}, {"id": "1", "title": "B"}), "Duplicate"),
        (_plan_reply({"id": "1", "title": "A", "dependencies": ["7"]}), "unknown tasks: 7"),
        (_plan_reply({"id": "1", "title": "  "}), "no title"),
        (_plan_reply({"id": "1", "title": "A", "status": "someday"}), "unknown status"),
    ],
)
def test_parse_task_plan_rejects_unusable_replies(reply: str, message: str) -> None:
    with pytest.raises(PlanningError, match=message):
        parse_task_plan(reply)


def test_plan_from_prds_with_echo_agent(settings: Settings) -> None:
    _write_prd(settings, "auth.md", "# Auth\nUsers sign in with email.\n")
    _write_prd(settings, "billing.md", "# Billing\nMonthly invoices.\n")
    gateway = CliAgentGateway(ECHO_AGENT_COMMAND_TEMPLATE)

    result = _planner(settings, gateway).plan()

    assert result.source == PlanSource.PRDS
    assert result.prd_names == ["auth.md", "billing.md"]
    document = read_queue_document(settings.paths.tasks_file)
    assert [task.title for task in document.tasks] == ["Implement auth.md", "Implement billing.md"]
    assert document.tasks[1].dependencies == ["1"]
    assert document.tasks[0].created_at == _NOW
    assert (settings.paths.logs_dir / "planning" / "plan.md").exists()


def test_plan_prompt_carries_every_prd(settings: Settings) -> None:
    _write_prd(settings, "auth.md", "Users sign in with email.")
    _write_prd(settings, "notes.txt", "not a PRD")
    gateway = ScriptedGateway([success(_plan_reply({"id": "1", "title": "Login"}))])

    _planner(settings, gateway).plan()

    (request,) = gateway.requests
    assert request.model == "haiku"
    assert request.prompt.startswith("# Task Planning")
    assert "## PRD: auth.md\n\nUsers sign in with email." in request.prompt
    assert "not a PRD" not in request.prompt


def test_no_prds_writes_example_without_agent_call(settings: Settings) -> None:
    gateway = ScriptedGateway()

    result = _planner(settings, gateway).plan()

    assert gateway.calls == 0
    assert result.source == PlanSource.EXAMPLE
    assert [task.id for task in read_queue_document(settings.paths.tasks_file).tasks] == ["1", "2"]


def test_failed_agent_call_writes_template(settings: Settings) -> None:
    _write_prd(settings, "auth.md", "Users sign in with email.")

    result = _planner(settings, ScriptedGateway([failure("agent exited with code 2")])).plan()

    assert result.source == PlanSource.FALLBACK
    assert result.reason == "agent exited with code 2"
    document = read_queue_document(settings.paths.tasks_file)
    assert document.project_name == "Your Project"
    assert [task.title for task in document.tasks] == ["Setup project"]


def test_unusable_reply_writes_template(settings: Settings) -> None:
    _write_prd(settings, "auth.md", "Users sign in with email.")

    result = _planner(settings, ScriptedGateway([success("No JSON today.")])).plan()

    assert result.source == PlanSource.FALLBACK
    assert "no JSON object" in (result.reason or "")
    assert read_queue_document(settings.paths.tasks_file).tasks[0].title == "Setup project"


def test_existing_queue_is_kept_unless_forced(settings: Settings, write_tasks) -> None:
    write_tasks(Task(id="9", title="Hand written", status=TaskStatus.IN_PROGRESS))
    _write_prd(settings, "auth.md", "Users sign in with email.")
    gateway = ScriptedGateway([success(_plan_reply({"id": "1", "title": "Login"}))])

    with pytest.raises(TaskQueueError, match="already exists"):
        _planner(settings, gateway).plan()
    assert gateway.calls == 0

    _planner(settings, gateway).plan(overwrite=True)

    document = read_queue_document(settings.paths.tasks_file)
    assert [task.title for task in document.tasks] == ["Login"]
    assert document.revision == 1
