"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from agent_duo.config import InstancePaths, Settings
from agent_duo.orchestrator.contracts import write_queue_document
from agent_duo.orchestrator.models import Task, TaskQueueDocument

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture(autouse=True)
def _clean_agent_duo_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("AGENT_DUO_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _child_pythonpath(monkeypatch: pytest.MonkeyPatch) -> None:
    """Agent and loop subprocesses import agent_duo from the source tree."""

    existing = os.environ.get("PYTHONPATH")
    value = str(SRC_DIR) if not existing else os.pathsep.join([str(SRC_DIR), existing])
    monkeypatch.setenv("PYTHONPATH", value)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings for an isolated instance under tmp_path with no delays."""

    settings = Settings.from_env(root=tmp_path)
    settings.worker.iteration_delay_seconds = 0
    settings.manager.review_interval_seconds = 0
    settings.manager.review_base_wait_seconds = 1
    settings.manager.review_max_wait_seconds = 8
    settings.manager.review_progress_tick_seconds = 1_000
    settings.supervisor.start_stagger_seconds = 0
    settings.paths.ensure()
    return settings


@pytest.fixture()
def paths(settings: Settings) -> InstancePaths:
    return settings.paths


@pytest.fixture()
def write_tasks(paths: InstancePaths) -> Callable[..., list[Task]]:
    """Write a queue document holding the given tasks."""

    def _write(*tasks: Task) -> list[Task]:
        write_queue_document(
            paths.tasks_file,
            TaskQueueDocument(project_name="Test Project", tasks=list(tasks)),
        )
        return list(tasks)

    return _write
