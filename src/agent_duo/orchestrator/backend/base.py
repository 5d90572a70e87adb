"""Gateway interface for external agent invocations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agent_duo.orchestrator.models import GatewayOutcome


@dataclass(slots=True)
class GatewayRequest:
    """Inputs required for one blocking agent call."""

    model: str
    prompt: str
    workdir: Path
    transcript_path: Path
    timeout_seconds: int = 3_600
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class GatewayResult:
    """Normalized outcome of one agent call."""

    outcome: GatewayOutcome
    text: str = ""
    reason: str | None = None
    exit_code: int | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == GatewayOutcome.SUCCESS

    @property
    def rate_limited(self) -> bool:
        return self.outcome == GatewayOutcome.RATE_LIMITED


class AgentGateway(Protocol):
    """Protocol implemented by agent gateways."""

    def invoke(self, request: GatewayRequest) -> GatewayResult:
        """Run the agent to completion and classify the outcome."""
