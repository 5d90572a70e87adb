"""Prompt builders for Worker iterations and Manager reviews."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from agent_duo.orchestrator.models import Task

_TRANSCRIPT_PREVIEW_LINES = 100

REVIEW_RESPONSE_SCHEMA = """\
{
  "score": 7,
  "verdict": "approved | needs_work",
  "findings": "<issues found, or why the work is good>",
  "skills": [
    {"name": "<short-skill-name>", "content": "<markdown guidance for the Worker>"}
  ],
  "directive": "<optional redirection for the Worker, or null>"
}"""


@dataclass(slots=True)
class WorkerContext:
    """Everything the Worker prompt is assembled from."""

    iteration: int
    task: Task
    all_tasks: list[Task]
    skills: str
    progress_notes: str
    directive: str | None
    project_path: Path
    progress_file: Path
    completion_marker: Path


def tasks_overview(tasks: list[Task]) -> str:
    if not tasks:
        return "No tasks."
    return "\n".join(f"[{task.status.value}] Task {task.id}: {task.title}" for task in tasks)


def build_worker_prompt(context: WorkerContext) -> str:
    task = context.task
    directive = (
        f"## Manager Directive\n{context.directive.strip()}\n"
        if context.directive
        else "## Manager Directive\nNone.\n"
    )
    return (
        f"# Worker Session - Task Implementation\n"
        f"\n"
        f"## Iteration: {context.iteration}\n"
        f"\n"
        f"## Your Role\n"
        f"You are the Worker, an autonomous development agent implementing a project\n"
        f"task by task. Each iteration you work on ONE task and complete it fully.\n"
        f"\n"
        f"{context.skills}\n"
        f"\n"
        f"## All Tasks Overview\n"
        f"```\n{tasks_overview(context.all_tasks)}\n```\n"
        f"\n"
        f"## Current Task (ID: {task.id})\n"
        f"**Title:** {task.title}\n"
        f"\n"
        f"**Description:**\n{task.description or 'None specified'}\n"
        f"\n"
        f"**Acceptance Criteria:**\n{task.acceptance_criteria or 'None specified'}\n"
        f"\n"
        f"## Previous Work Context\n"
        f"{context.progress_notes.strip() or 'No previous progress notes.'}\n"
        f"\n"
        f"{directive}"
        f"\n"
        f"## Steps\n"
        f"1. Read existing code in {context.project_path} and the progress notes.\n"
        f"2. Implement the current task fully; focus only on this task.\n"
        f"3. Validate your implementation works.\n"
        f"4. Update {context.progress_file} with what you did.\n"
        f"5. When the task is complete, create the completion marker file below\n"
        f"   with a brief summary of what you implemented.\n"
        f"\n"
        f"Project path: {context.project_path}\n"
        f"Completion marker: {context.completion_marker}\n"
        f"\n"
        f"Write all source code to the project path. The Manager will review your work.\n"
        f"Now begin working on Task {task.id}.\n"
    )


@dataclass(slots=True)
class ReviewContext:
    """Compact inputs for one Manager review."""

    review_number: int
    iteration: int
    task_id: str | None
    skill_count: int
    transcript_preview: str


def transcript_preview(path: Path | None, *, max_lines: int = _TRANSCRIPT_PREVIEW_LINES) -> str:
    """First lines of the latest iteration transcript."""

    if path is None or not path.exists():
        return "No iteration output found."
    lines = path.read_text("utf-8", errors="replace").splitlines()
    preview = "\n".join(lines[:max_lines])
    if len(lines) > max_lines:
        preview += f"\n... ({len(lines) - max_lines} more lines)"
    return preview


def build_review_prompt(context: ReviewContext) -> str:
    return (
        f"# Manager Review #{context.review_number} (Iteration {context.iteration})\n"
        f"\n"
        f"## Quick Check\n"
        f"Task: {context.task_id or 'unknown'}\n"
        f"Skills available: {context.skill_count}\n"
        f"\n"
        f"## Latest Iteration\n"
        f"{context.transcript_preview}\n"
        f"\n"
        f"## Your Tasks (Be Concise)\n"
        f"1. Score the work from 1 to 10 and list issues found.\n"
        f"2. Propose a skill when you spot a reusable pattern or repeated mistake.\n"
        f"3. Give a directive only if the Worker needs redirection.\n"
        f"4. Decide: approved or needs_work.\n"
        f"\n"
        f"Reply with a single JSON object in this shape:\n"
        f"{REVIEW_RESPONSE_SCHEMA}\n"
    )


PLAN_RESPONSE_SCHEMA = """\
{
  "projectName": "<project name>",
  "description": "<brief project description>",
  "tasks": [
    {
      "id": "1",
      "title": "<concise task title>",
      "description": "<what needs to be done in 2-3 sentences>",
      "acceptanceCriteria": "<how to verify it is complete>",
      "status": "pending",
      "estimatedIterations": 1,
      "dependencies": []
    }
  ]
}"""


@dataclass(slots=True)
class PrdDocument:
    """One product requirements file from `prds/`."""

    name: str
    text: str


def build_planning_prompt(prds: list[PrdDocument]) -> str:
    combined = "\n\n".join(f"## PRD: {prd.name}\n\n{prd.text.strip()}" for prd in prds)
    return (
        f"# Task Planning\n"
        f"\n"
        f"You are turning product requirement documents into bite-sized tasks for an\n"
        f"autonomous development loop that works on one task per iteration.\n"
        f"\n"
        f"## Input PRDs\n"
        f"\n"
        f"{combined}\n"
        f"\n"
        f"## Guidelines\n"
        f"- Each task is small and focused (one file or one feature) and fits in 1-3 iterations.\n"
        f"- Order tasks so that dependencies come first and list their ids in `dependencies`.\n"
        f"- Use clear, actionable titles and specific acceptance criteria.\n"
        f"- Aim for 10-30 tasks in total.\n"
        f"\n"
        f"Reply with a single fenced ```json block in this shape:\n"
        f"{PLAN_RESPONSE_SCHEMA}\n"
    )
