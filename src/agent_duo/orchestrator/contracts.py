"""File contract for the task queue document (`prds/tasks.json`).

The document is shared with the external dashboard, so keys stay camelCase and
unknown keys are carried through untouched.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from agent_duo.orchestrator.models import Task, TaskQueueDocument, TaskStatus
from agent_duo.orchestrator.state import from_iso, load_json, to_iso, write_json

_TASK_KEYS = {
    "id",
    "title",
    "description",
    "acceptanceCriteria",
    "status",
    "estimatedIterations",
    "actualIterations",
    "dependencies",
    "createdAt",
    "startedAt",
    "completedAt",
}
_DOCUMENT_KEYS = {"projectName", "description", "revision", "tasks"}


class TaskQueueError(RuntimeError):
    """Base error for task queue operations."""


class QueueDocumentError(TaskQueueError):
    """Queue document is missing required structure."""


def read_queue_document(path: Path) -> TaskQueueDocument:
    """Load and validate the queue document; a missing file is an empty queue."""

    if not path.exists():
        return TaskQueueDocument()
    try:
        raw = load_json(path)
    except (ValueError, TypeError) as error:
        raise QueueDocumentError(f"Invalid queue document at {path}: {error}") from error
    return queue_document_from_dict(raw)


def queue_document_from_dict(raw: dict[str, Any]) -> TaskQueueDocument:
    """Validate a decoded queue document payload."""

    raw_tasks = raw.get("tasks", [])
    if not isinstance(raw_tasks, list):
        raise QueueDocumentError("tasks.json: tasks must be an array")
    revision = raw.get("revision", 0)
    if not isinstance(revision, int) or revision < 0:
        raise QueueDocumentError("tasks.json: revision must be an integer >= 0")

    return TaskQueueDocument(
        tasks=[task_from_dict(item) for item in raw_tasks],
        project_name=str(raw.get("projectName") or ""),
        description=str(raw.get("description") or ""),
        revision=revision,
        extra={key: value for key, value in raw.items() if key not in _DOCUMENT_KEYS},
    )


def write_queue_document(path: Path, document: TaskQueueDocument) -> None:
    """Persist the whole queue document atomically."""

    payload: dict[str, Any] = {
        "projectName": document.project_name,
        "description": document.description,
        "revision": document.revision,
        **document.extra,
        "tasks": [task_to_dict(task) for task in document.tasks],
    }
    write_json(path, payload)


def task_from_dict(item: object) -> Task:
    """Deserialize and validate one task entry."""

    if not isinstance(item, dict):
        raise QueueDocumentError("tasks.json: task entry must be an object")
    task_id = item.get("id")
    if isinstance(task_id, int):
        task_id = str(task_id)
    if not isinstance(task_id, str) or not task_id.strip():
        raise QueueDocumentError("tasks.json: task.id must be a non-empty string")
    title = item.get("title", "")
    if not isinstance(title, str):
        raise QueueDocumentError(f"tasks.json: task {task_id} title must be a string")

    status_raw = item.get("status", TaskStatus.PENDING.value)
    try:
        status = TaskStatus(str(status_raw).strip().lower())
    except ValueError as error:
        raise QueueDocumentError(
            f"tasks.json: task {task_id} has unknown status {status_raw!r}",
        ) from error

    dependencies_raw = item.get("dependencies") or []
    if not isinstance(dependencies_raw, list):
        raise QueueDocumentError(f"tasks.json: task {task_id} dependencies must be an array")

    return Task(
        id=task_id.strip(),
        title=title,
        description=_optional_text(item.get("description")),
        acceptance_criteria=_optional_text(item.get("acceptanceCriteria")),
        status=status,
        estimated_iterations=_optional_int(item.get("estimatedIterations")),
        actual_iterations=_optional_int(item.get("actualIterations")) or 0,
        dependencies=[str(dependency) for dependency in dependencies_raw],
        created_at=from_iso(_optional_str(item.get("createdAt"))),
        started_at=from_iso(_optional_str(item.get("startedAt"))),
        completed_at=from_iso(_optional_str(item.get("completedAt"))),
        extra={key: value for key, value in item.items() if key not in _TASK_KEYS},
    )


def task_to_dict(task: Task) -> dict[str, Any]:
    """Serialize one task entry in dashboard-compatible form."""

    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "acceptanceCriteria": task.acceptance_criteria,
        "status": task.status.value,
        "estimatedIterations": task.estimated_iterations,
        "actualIterations": task.actual_iterations,
        "dependencies": list(task.dependencies),
        "createdAt": to_iso(task.created_at),
        "startedAt": to_iso(task.started_at),
        "completedAt": to_iso(task.completed_at),
        **task.extra,
    }


def _optional_text(value: object) -> str:
    if value is None:
        return ""
    return str(value)


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None
