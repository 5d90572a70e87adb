"""Persisted coordination state shared by the Worker, Manager and Supervisor.

Every document is a small file under the instance `.state/` directory and is
always replaced as a whole (write to a temp file, then `os.replace`), so a
concurrent reader sees either the old or the new content, never a torn write.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agent_duo.orchestrator.models import (
    LivenessRecord,
    ManagerStatus,
    ProcessRole,
    WorkerStatus,
)

WORKER_ITERATION = "worker_iteration"
WORKER_MAX_ITERATIONS = "worker_max_iterations"
WORKER_STATUS = "worker_status"
WORKER_ERROR = "worker_error"
CURRENT_TASK = "current_task"
REVIEW_SIGNAL = "ready_for_review"
LAST_REVIEWED = "last_reviewed_iteration"
REVIEW_COUNT = "manager_reviews"
MANAGER_STATUS = "manager_status"
DIRECTIVE = "manager_directive.md"


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def from_iso(value: str | None) -> datetime | None:
    """Parse ISO timestamp, accepting a trailing `Z` and naive values as UTC."""

    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def atomic_write_text(path: Path, text: str) -> None:
    """Replace `path` with `text` so readers never observe a partial file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


class StateStore:
    """Typed accessors for the documents in the instance state directory."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    def path(self, name: str) -> Path:
        return self.state_dir / name

    def read_text(self, name: str) -> str | None:
        path = self.path(name)
        try:
            return path.read_text("utf-8")
        except FileNotFoundError:
            return None

    def write_text(self, name: str, text: str) -> None:
        atomic_write_text(self.path(name), text)

    def clear(self, name: str) -> None:
        self.path(name).unlink(missing_ok=True)

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def read_int(self, name: str, default: int = 0) -> int:
        raw = self.read_text(name)
        if raw is None:
            return default
        try:
            return int(raw.strip())
        except ValueError:
            return default

    def write_int(self, name: str, value: int) -> None:
        self.write_text(name, f"{value}\n")

    # Worker-owned documents.

    def iteration(self) -> int:
        return self.read_int(WORKER_ITERATION)

    def set_iteration(self, value: int) -> None:
        self.write_int(WORKER_ITERATION, value)

    def max_iterations(self) -> int | None:
        """Ceiling the running (or last) Worker was launched with."""

        if not self.exists(WORKER_MAX_ITERATIONS):
            return None
        return self.read_int(WORKER_MAX_ITERATIONS)

    def set_max_iterations(self, value: int) -> None:
        self.write_int(WORKER_MAX_ITERATIONS, value)

    def worker_status(self) -> WorkerStatus:
        return _parse_enum(WorkerStatus, self.read_text(WORKER_STATUS), WorkerStatus.UNKNOWN)

    def set_worker_status(self, status: WorkerStatus) -> None:
        self.write_text(WORKER_STATUS, f"{status.value}\n")

    def clear_worker_status(self) -> None:
        self.clear(WORKER_STATUS)

    def worker_error(self) -> str | None:
        raw = self.read_text(WORKER_ERROR)
        return raw.strip() if raw else None

    def set_worker_error(self, reason: str) -> None:
        self.write_text(WORKER_ERROR, f"{to_iso(utc_now())} {reason}\n")

    def clear_worker_error(self) -> None:
        self.clear(WORKER_ERROR)

    def current_task(self) -> str | None:
        raw = self.read_text(CURRENT_TASK)
        return raw.strip() if raw and raw.strip() else None

    def set_current_task(self, task_id: str) -> None:
        self.write_text(CURRENT_TASK, f"{task_id}\n")

    def review_signal(self) -> int | None:
        if not self.exists(REVIEW_SIGNAL):
            return None
        return self.read_int(REVIEW_SIGNAL)

    def signal_review(self, iteration: int) -> None:
        self.write_int(REVIEW_SIGNAL, iteration)

    def clear_review_signal(self) -> None:
        self.clear(REVIEW_SIGNAL)

    def completion_marker(self, task_id: str) -> Path:
        return self.path(f"TASK_{task_id}_COMPLETE")

    # Manager-owned documents.

    def last_reviewed(self) -> int:
        return self.read_int(LAST_REVIEWED)

    def set_last_reviewed(self, iteration: int) -> None:
        self.write_int(LAST_REVIEWED, iteration)

    def review_count(self) -> int:
        return self.read_int(REVIEW_COUNT)

    def set_review_count(self, value: int) -> None:
        self.write_int(REVIEW_COUNT, value)

    def manager_status(self) -> ManagerStatus:
        return _parse_enum(ManagerStatus, self.read_text(MANAGER_STATUS), ManagerStatus.UNKNOWN)

    def set_manager_status(self, status: ManagerStatus) -> None:
        self.write_text(MANAGER_STATUS, f"{status.value}\n")

    def directive(self) -> str | None:
        raw = self.read_text(DIRECTIVE)
        if raw is None or not raw.strip():
            return None
        return raw

    def write_directive(self, text: str) -> None:
        self.write_text(DIRECTIVE, text.rstrip() + "\n")

    def consume_directive(self) -> str | None:
        """Read and clear the directive; a crash in between may redeliver it."""

        text = self.directive()
        self.clear(DIRECTIVE)
        return text

    # Supervisor-owned documents.

    def liveness_path(self, role: ProcessRole) -> Path:
        return self.path(f"{role.value}.pid")

    def read_liveness(self, role: ProcessRole) -> LivenessRecord | None:
        path = self.liveness_path(role)
        try:
            raw = path.read_text("utf-8")
        except FileNotFoundError:
            return None
        text = raw.strip()
        if text.isdigit():
            return LivenessRecord(role=role, pid=int(text))
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return None
        pid = payload.get("pid") if isinstance(payload, dict) else None
        if not isinstance(pid, int) or pid <= 0:
            return None
        return LivenessRecord(role=role, pid=pid, started_at=from_iso(payload.get("started_at")))

    def write_liveness(self, record: LivenessRecord) -> None:
        write_json(
            self.liveness_path(record.role),
            {
                "role": record.role.value,
                "pid": record.pid,
                "started_at": to_iso(record.started_at),
            },
        )

    def clear_liveness(self, role: ProcessRole) -> None:
        self.liveness_path(role).unlink(missing_ok=True)

    def reset(self) -> None:
        """Delete every coordination document."""

        if self.state_dir.exists():
            shutil.rmtree(self.state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)


def _parse_enum(enum_type, raw: str | None, default):
    if raw is None:
        return default
    try:
        return enum_type(raw.strip().lower())
    except ValueError:
        return default
