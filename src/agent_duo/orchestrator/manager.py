"""Manager loop: reviews Worker iterations and feeds skills back to it."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from agent_duo.config import GatewaySettings, InstancePaths, ManagerSettings
from agent_duo.orchestrator.backend import AgentGateway, GatewayRequest, GatewayResult
from agent_duo.orchestrator.context import ReviewContext, build_review_prompt, transcript_preview
from agent_duo.orchestrator.lifecycle import StoppableLoop
from agent_duo.orchestrator.models import ManagerStatus, ReviewOutcome, ReviewRecord
from agent_duo.orchestrator.reviews import (
    ReviewLedger,
    parse_review_response,
    render_final_report,
    write_final_report,
)
from agent_duo.orchestrator.skills import SkillLibrary
from agent_duo.orchestrator.state import StateStore, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff for rate-limited review calls."""

    max_attempts: int = 10
    base_wait_seconds: float = 60.0
    max_wait_seconds: float = 1_800.0

    def wait_before(self, retry_index: int) -> float:
        """Wait before retry number `retry_index` (0-based), capped at the maximum."""

        return min(self.base_wait_seconds * (2**retry_index), self.max_wait_seconds)


@dataclass(slots=True)
class ReviewAttemptReport:
    """What the retry protocol did for one review."""

    result: GatewayResult
    attempts: int
    waits: list[float] = field(default_factory=list)


@dataclass(slots=True)
class ManagerRunSummary:
    """Aggregate manager counters for CLI reporting."""

    reviewed: int = 0
    rate_limited: int = 0
    failed: int = 0
    final_report: Path | None = None

    def count(self, outcome: ReviewOutcome) -> None:
        if outcome == ReviewOutcome.REVIEWED:
            self.reviewed += 1
        elif outcome == ReviewOutcome.RATE_LIMITED:
            self.rate_limited += 1
        elif outcome == ReviewOutcome.FAILED:
            self.failed += 1


class ManagerLoop(StoppableLoop):
    """Polls the Review Signal and reviews each signalled iteration at most once.

    The watermark makes the skip decision: the larger of the persisted
    `last_reviewed_iteration` and the newest iteration in the review ledger, so
    a restarted Manager never repeats a review it already recorded.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        paths: InstancePaths,
        settings: ManagerSettings,
        gateway: AgentGateway,
        gateway_settings: GatewaySettings | None = None,
        state: StateStore | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__()
        self.paths = paths
        self.settings = settings
        self.gateway = gateway
        self.gateway_settings = gateway_settings or GatewaySettings()
        self.state = state or StateStore(paths.state_dir)
        self.skills = SkillLibrary(paths.skills_dir)
        self.ledger = ReviewLedger(paths.reviews_dir)
        self.retry_policy = RetryPolicy(
            max_attempts=settings.review_max_attempts,
            base_wait_seconds=settings.review_base_wait_seconds,
            max_wait_seconds=settings.review_max_wait_seconds,
        )
        self._sleep = sleep or self._sleep_with_stop
        self._clock = clock

    def run_loop(self) -> ManagerRunSummary:
        """Poll until the Worker stops, then run a final review and write the report."""

        summary = ManagerRunSummary()
        self.paths.ensure()
        self.state.set_manager_status(ManagerStatus.RUNNING)
        self._repair_watermark()
        logger.info(
            "Manager started: model=%s review_interval=%ss",
            self.settings.model,
            self.settings.review_interval_seconds,
        )

        with self._signal_handlers():
            while not self.stop_requested:
                worker_status = self.state.worker_status()
                if worker_status.is_terminal:
                    logger.info("Worker is %s, running final review", worker_status.value)
                    summary.count(self.final_review())
                    break
                summary.count(self._poll_guarded())
                self._sleep_with_stop(self.settings.review_interval_seconds)

        summary.final_report = self.write_final_report()
        self.state.set_manager_status(ManagerStatus.STOPPED)
        logger.info(
            "Manager exited: reviewed=%s rate_limited=%s failed=%s",
            summary.reviewed,
            summary.rate_limited,
            summary.failed,
        )
        return summary

    def _poll_guarded(self) -> ReviewOutcome:
        try:
            return self.poll_once()
        except Exception:
            logger.exception("Review cycle crashed, continuing with next poll")
            return ReviewOutcome.FAILED

    def poll_once(self) -> ReviewOutcome:
        """Review the signalled iteration if it is past the watermark."""

        signalled = self.state.review_signal()
        if signalled is None or signalled <= self.watermark():
            return ReviewOutcome.SKIPPED
        return self.review(signalled)

    def final_review(self) -> ReviewOutcome:
        iteration = self.state.iteration()
        if iteration <= self.watermark():
            logger.info("Final review skipped, iteration %s already reviewed", iteration)
            return ReviewOutcome.SKIPPED
        return self.review(iteration)

    def review(self, iteration: int) -> ReviewOutcome:
        """Run one review of `iteration` through the retry protocol."""

        review_number = self._next_review_number()
        task_id = self.state.current_task()
        prompt = build_review_prompt(
            ReviewContext(
                review_number=review_number,
                iteration=iteration,
                task_id=task_id,
                skill_count=self.skills.count(),
                transcript_preview=transcript_preview(self._latest_transcript()),
            ),
        )
        logger.info("Review #%s of iteration %s started", review_number, iteration)
        report = self.invoke_with_retry(
            prompt=prompt,
            transcript_path=self.paths.logs_dir / "reviews" / f"review_{review_number}.md",
        )
        result = report.result

        if result.cancelled:
            logger.info("Review #%s cancelled by shutdown, signal kept", review_number)
            return ReviewOutcome.SKIPPED
        if result.rate_limited:
            logger.warning(
                "Review of iteration %s still rate limited after %s attempts, "
                "will retry next poll",
                iteration,
                report.attempts,
            )
            return ReviewOutcome.RATE_LIMITED
        if not result.ok:
            logger.warning(
                "Review of iteration %s failed, abandoning this cycle: %s",
                iteration,
                result.reason,
            )
            self._clear_signal_up_to(iteration)
            return ReviewOutcome.FAILED

        parsed = parse_review_response(result.text)
        skill_names = [self.skills.add(draft) for draft in parsed.skills]
        if parsed.directive:
            self.state.write_directive(parsed.directive)
        self.ledger.write(
            ReviewRecord(
                review_number=review_number,
                iteration=iteration,
                task_id=task_id,
                verdict=parsed.verdict,
                score=parsed.score,
                findings=parsed.findings,
                skills=skill_names,
                directive_issued=parsed.directive is not None,
                model=self.settings.model,
                created_at=self._clock(),
            ),
        )
        self.state.set_last_reviewed(iteration)
        self.state.set_review_count(review_number)
        self._clear_signal_up_to(iteration)
        logger.info(
            "Review #%s complete: iteration=%s verdict=%s score=%s skills=%s directive=%s",
            review_number,
            iteration,
            parsed.verdict.value,
            parsed.score,
            len(skill_names),
            parsed.directive is not None,
        )
        return ReviewOutcome.REVIEWED

    def invoke_with_retry(self, *, prompt: str, transcript_path: Path) -> ReviewAttemptReport:
        """Call the gateway, backing off exponentially while it is rate limited."""

        policy = self.retry_policy
        waits: list[float] = []
        attempts = 0
        while True:
            attempts += 1
            result = self.gateway.invoke(
                GatewayRequest(
                    model=self.settings.model,
                    prompt=prompt,
                    workdir=self.paths.project_path,
                    transcript_path=transcript_path,
                    timeout_seconds=self.gateway_settings.timeout_seconds,
                    shutdown_requested=lambda: self.stop_requested,
                    graceful_shutdown_seconds=self.gateway_settings.graceful_shutdown_seconds,
                ),
            )
            if (
                not result.rate_limited
                or attempts >= policy.max_attempts
                or self.stop_requested
            ):
                return ReviewAttemptReport(result=result, attempts=attempts, waits=waits)

            wait = policy.wait_before(attempts - 1)
            waits.append(wait)
            logger.warning(
                "Rate limited (attempt %s/%s), retrying in %.0fs",
                attempts,
                policy.max_attempts,
                wait,
            )
            self._wait_with_progress(wait)
            if self.stop_requested:
                return ReviewAttemptReport(result=result, attempts=attempts, waits=waits)

    def _wait_with_progress(self, seconds: float) -> None:
        remaining = seconds
        tick = self.settings.review_progress_tick_seconds
        while remaining > 0 and not self.stop_requested:
            chunk = min(tick, remaining)
            self._sleep(chunk)
            remaining -= chunk
            if remaining > 0:
                logger.info("Waiting for rate limit to clear: %.0fs remaining", remaining)

    def write_final_report(self) -> Path:
        text = render_final_report(
            records=self.ledger.list_records(),
            skill_names=self.skills.names(),
            generated_at=self._clock(),
        )
        path = self.paths.final_report_file
        write_final_report(path, text)
        logger.info("Final report written to %s", path)
        return path

    def watermark(self) -> int:
        """Highest iteration already reviewed."""

        recorded = max((record.iteration for record in self.ledger.list_records()), default=0)
        return max(self.state.last_reviewed(), recorded)

    def _repair_watermark(self) -> None:
        # The ledger record is written before the watermark; a crash in between
        # leaves the persisted watermark behind.
        watermark = self.watermark()
        if watermark > self.state.last_reviewed():
            logger.warning("Watermark behind review ledger, advancing it to %s", watermark)
            self.state.set_last_reviewed(watermark)

    def _next_review_number(self) -> int:
        records = self.ledger.list_records()
        latest = records[-1].review_number if records else 0
        return max(self.state.review_count(), latest) + 1

    def _latest_transcript(self) -> Path | None:
        directory = self.paths.transcripts_dir
        if not directory.exists():
            return None
        candidates = [
            path
            for path in directory.glob("iteration_*_task_*.md")
            if path.is_file() and not path.name.endswith(".prompt.md")
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda path: path.stat().st_mtime)

    def _clear_signal_up_to(self, iteration: int) -> None:
        signalled = self.state.review_signal()
        if signalled is not None and signalled <= iteration:
            self.state.clear_review_signal()

    def _on_stop_requested(self) -> None:
        self.state.set_manager_status(ManagerStatus.STOPPING)
