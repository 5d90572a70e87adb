"""Runtime configuration for the Worker, Manager and Supervisor."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_duo.orchestrator.models import EligibilityPolicy

ENV_PREFIX = "AGENT_DUO_"

# Without {prompt} in the template the prompt is fed on stdin, so its size is
# not bounded by the per-argument limit of the OS.
DEFAULT_AGENT_COMMAND = "claude -p --model {model} --dangerously-skip-permissions"


@dataclass(slots=True)
class InstancePaths:
    """Directory layout of one orchestrated instance."""

    root: Path
    project_path: Path

    @property
    def prds_dir(self) -> Path:
        return self.root / "prds"

    @property
    def tasks_file(self) -> Path:
        return self.prds_dir / "tasks.json"

    @property
    def state_dir(self) -> Path:
        return self.root / ".state"

    @property
    def skills_dir(self) -> Path:
        return self.root / "skills"

    @property
    def reviews_dir(self) -> Path:
        return self.root / "reviews"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def transcripts_dir(self) -> Path:
        return self.logs_dir / "iterations"

    @property
    def progress_file(self) -> Path:
        return self.project_path / "PROGRESS.md"

    @property
    def final_report_file(self) -> Path:
        return self.reviews_dir / "FINAL_REPORT.md"

    def ensure(self) -> None:
        """Create every directory the loops write into."""

        for directory in (
            self.prds_dir,
            self.state_dir,
            self.skills_dir,
            self.reviews_dir,
            self.logs_dir,
            self.transcripts_dir,
            self.project_path,
        ):
            directory.mkdir(parents=True, exist_ok=True)


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop settings."""

    model: str = "opus"
    max_iterations: int = 50
    iteration_delay_seconds: float = 5.0
    review_every: int = 3
    task_policy: EligibilityPolicy = EligibilityPolicy.FIFO
    max_skill_context_chars: int = 40_000


@dataclass(slots=True)
class ManagerSettings:
    """Manager loop settings, including the review retry/backoff policy."""

    model: str = "sonnet"
    review_interval_seconds: float = 60.0
    review_max_attempts: int = 10
    review_base_wait_seconds: float = 60.0
    review_max_wait_seconds: float = 1_800.0
    review_progress_tick_seconds: float = 10.0


@dataclass(slots=True)
class GatewaySettings:
    """External agent command settings."""

    command_template: str = DEFAULT_AGENT_COMMAND
    timeout_seconds: int = 3_600
    graceful_shutdown_seconds: int = 30


@dataclass(slots=True)
class PlannerSettings:
    """Settings for turning PRD files into the task queue."""

    model: str = "haiku"


@dataclass(slots=True)
class SupervisorSettings:
    """Process supervision settings."""

    no_manager: bool = False
    start_stagger_seconds: float = 2.0
    stop_grace_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by process concerns."""

    paths: InstancePaths = field(
        default_factory=lambda: InstancePaths(root=Path(), project_path=Path("output")),
    )
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    manager: ManagerSettings = field(default_factory=ManagerSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    planner: PlannerSettings = field(default_factory=PlannerSettings)

    @classmethod
    def from_env(cls, root: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        resolved_root = (root or Path(_env("ROOT", "."))).resolve()
        return cls(
            paths=InstancePaths(
                root=resolved_root,
                project_path=_resolve_project_path(resolved_root),
            ),
            worker=WorkerSettings(
                model=_env("WORKER_MODEL", "opus"),
                max_iterations=int(_env("MAX_ITERATIONS", "50")),
                iteration_delay_seconds=float(_env("ITERATION_DELAY", "5")),
                review_every=int(_env("REVIEW_EVERY", "3")),
                task_policy=_parse_policy(_env("TASK_POLICY", "fifo")),
                max_skill_context_chars=int(_env("MAX_SKILL_CONTEXT_CHARS", "40000")),
            ),
            manager=ManagerSettings(
                model=_env("MANAGER_MODEL", "sonnet"),
                review_interval_seconds=float(_env("REVIEW_INTERVAL", "60")),
                review_max_attempts=int(_env("REVIEW_MAX_ATTEMPTS", "10")),
                review_base_wait_seconds=float(_env("REVIEW_BASE_WAIT", "60")),
                review_max_wait_seconds=float(_env("REVIEW_MAX_WAIT", "1800")),
                review_progress_tick_seconds=float(_env("REVIEW_PROGRESS_TICK", "10")),
            ),
            gateway=GatewaySettings(
                command_template=_env("AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                timeout_seconds=int(_env("AGENT_TIMEOUT", "3600")),
                graceful_shutdown_seconds=int(_env("AGENT_GRACEFUL_SHUTDOWN", "30")),
            ),
            supervisor=SupervisorSettings(
                no_manager=_env_bool(f"{ENV_PREFIX}NO_MANAGER", default=False),
                start_stagger_seconds=float(_env("START_STAGGER", "2")),
                stop_grace_seconds=float(_env("STOP_GRACE", "2")),
            ),
            planner=PlannerSettings(model=_env("PLANNER_MODEL", "haiku")),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.worker.max_iterations <= 0:
            raise ValueError(f"{ENV_PREFIX}MAX_ITERATIONS must be a positive integer.")
        if self.worker.iteration_delay_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}ITERATION_DELAY must be >= 0.")
        if self.worker.review_every <= 0:
            raise ValueError(f"{ENV_PREFIX}REVIEW_EVERY must be a positive integer.")
        if self.worker.max_skill_context_chars <= 0:
            raise ValueError(f"{ENV_PREFIX}MAX_SKILL_CONTEXT_CHARS must be a positive integer.")
        if not self.worker.model.strip():
            raise ValueError(f"{ENV_PREFIX}WORKER_MODEL must not be empty.")
        if not self.manager.model.strip():
            raise ValueError(f"{ENV_PREFIX}MANAGER_MODEL must not be empty.")
        if not self.planner.model.strip():
            raise ValueError(f"{ENV_PREFIX}PLANNER_MODEL must not be empty.")
        if self.manager.review_interval_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}REVIEW_INTERVAL must be >= 0.")
        if self.manager.review_max_attempts <= 0:
            raise ValueError(f"{ENV_PREFIX}REVIEW_MAX_ATTEMPTS must be a positive integer.")
        if self.manager.review_base_wait_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}REVIEW_BASE_WAIT must be >= 0.")
        if self.manager.review_max_wait_seconds < self.manager.review_base_wait_seconds:
            raise ValueError(
                f"{ENV_PREFIX}REVIEW_MAX_WAIT must be >= {ENV_PREFIX}REVIEW_BASE_WAIT.",
            )
        if self.manager.review_progress_tick_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}REVIEW_PROGRESS_TICK must be > 0.")
        template = self.gateway.command_template
        if not template.strip():
            raise ValueError(f"{ENV_PREFIX}AGENT_COMMAND must not be empty.")
        if self.gateway.timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}AGENT_TIMEOUT must be a positive integer.")

    def to_env(self) -> dict[str, str]:
        """Export settings as environment variables for child processes."""

        return {
            f"{ENV_PREFIX}ROOT": str(self.paths.root),
            f"{ENV_PREFIX}PROJECT_PATH": str(self.paths.project_path),
            f"{ENV_PREFIX}WORKER_MODEL": self.worker.model,
            f"{ENV_PREFIX}MAX_ITERATIONS": str(self.worker.max_iterations),
            f"{ENV_PREFIX}ITERATION_DELAY": str(self.worker.iteration_delay_seconds),
            f"{ENV_PREFIX}REVIEW_EVERY": str(self.worker.review_every),
            f"{ENV_PREFIX}TASK_POLICY": self.worker.task_policy.value,
            f"{ENV_PREFIX}MAX_SKILL_CONTEXT_CHARS": str(self.worker.max_skill_context_chars),
            f"{ENV_PREFIX}MANAGER_MODEL": self.manager.model,
            f"{ENV_PREFIX}REVIEW_INTERVAL": str(self.manager.review_interval_seconds),
            f"{ENV_PREFIX}REVIEW_MAX_ATTEMPTS": str(self.manager.review_max_attempts),
            f"{ENV_PREFIX}REVIEW_BASE_WAIT": str(self.manager.review_base_wait_seconds),
            f"{ENV_PREFIX}REVIEW_MAX_WAIT": str(self.manager.review_max_wait_seconds),
            f"{ENV_PREFIX}REVIEW_PROGRESS_TICK": str(self.manager.review_progress_tick_seconds),
            f"{ENV_PREFIX}AGENT_COMMAND": self.gateway.command_template,
            f"{ENV_PREFIX}AGENT_TIMEOUT": str(self.gateway.timeout_seconds),
            f"{ENV_PREFIX}AGENT_GRACEFUL_SHUTDOWN": str(self.gateway.graceful_shutdown_seconds),
            f"{ENV_PREFIX}NO_MANAGER": "true" if self.supervisor.no_manager else "false",
            f"{ENV_PREFIX}PLANNER_MODEL": self.planner.model,
        }


def _resolve_project_path(root: Path) -> Path:
    explicit = os.getenv(f"{ENV_PREFIX}PROJECT_PATH", "").strip()
    if explicit:
        return Path(explicit).resolve()

    config_file = root / "config.json"
    if config_file.exists():
        try:
            payload = json.loads(config_file.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise ValueError(f"Invalid instance config {config_file}: {error}") from error
        project_path = payload.get("projectPath") if isinstance(payload, dict) else None
        if isinstance(project_path, str) and project_path.strip():
            candidate = Path(project_path)
            return (candidate if candidate.is_absolute() else root / candidate).resolve()

    return root / "output"


def _parse_policy(value: str) -> EligibilityPolicy:
    normalized = value.strip().lower()
    try:
        return EligibilityPolicy(normalized)
    except ValueError as error:
        supported = ", ".join(policy.value for policy in EligibilityPolicy)
        raise ValueError(
            f"Invalid {ENV_PREFIX}TASK_POLICY: {value!r}. Expected one of: {supported}.",
        ) from error


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
