"""Deterministic classification of failed agent invocations."""

from __future__ import annotations

from dataclasses import dataclass

from agent_duo.orchestrator.models import GatewayOutcome

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
    "529",
    "overloaded",
    "quota",
    "credit",
    "usage limit",
)


@dataclass(slots=True)
class AgentFailureClassification:
    """Normalized failure classification result."""

    outcome: GatewayOutcome
    matched_pattern: str | None
    reason: str


def classify_agent_failure(
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
) -> AgentFailureClassification:
    """Split failures into retryable rate limiting and everything else."""

    haystack = f"{stderr}\n{stdout}".lower()
    for pattern in _RATE_LIMIT_PATTERNS:
        if pattern in haystack:
            return AgentFailureClassification(
                outcome=GatewayOutcome.RATE_LIMITED,
                matched_pattern=pattern,
                reason=f"rate limited (matched {pattern!r}, exit code {exit_code})",
            )

    return AgentFailureClassification(
        outcome=GatewayOutcome.FAILURE,
        matched_pattern=None,
        reason=f"agent exited with code {exit_code}: {_tail(stderr or stdout)}",
    )


def _tail(text: str, limit: int = 400) -> str:
    compact = text.strip()
    if len(compact) <= limit:
        return compact
    return compact[-limit:]
