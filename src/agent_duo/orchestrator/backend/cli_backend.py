"""Subprocess-based gateway for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import IO

from agent_duo.orchestrator.backend.base import GatewayRequest, GatewayResult
from agent_duo.orchestrator.failure_classifier import classify_agent_failure
from agent_duo.orchestrator.models import GatewayOutcome

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class CommandTemplateError(ValueError):
    """Agent command template cannot be rendered."""


class CliAgentGateway:
    """Run the configured agent command once per request.

    The command template may reference `{model}`, `{prompt}`, `{prompt_file}`
    and `{workdir}`.  When it does not reference `{prompt}` the prompt is fed
    on stdin instead.
    """

    def __init__(self, command_template: str, *, poll_seconds: float = 0.1) -> None:
        self.command_template = command_template
        self.poll_seconds = poll_seconds

    def invoke(self, request: GatewayRequest) -> GatewayResult:
        transcript_path = request.transcript_path
        stderr_path = transcript_path.with_name(f"{transcript_path.stem}.stderr.log")
        prompt_file = transcript_path.with_name(f"{transcript_path.stem}.prompt.md")
        transcript_path.parent.mkdir(parents=True, exist_ok=True)
        request.workdir.mkdir(parents=True, exist_ok=True)
        prompt_file.write_text(request.prompt, "utf-8")

        try:
            run_args = build_run_args(
                command_template=self.command_template,
                model=request.model,
                prompt=request.prompt,
                prompt_file=prompt_file,
                workdir=request.workdir,
            )
        except CommandTemplateError as error:
            return GatewayResult(outcome=GatewayOutcome.FAILURE, reason=str(error))

        env = os.environ.copy()
        env["AGENT_DUO_AGENT_MODEL"] = request.model
        stdin_path = None if "{prompt}" in self.command_template else prompt_file

        logger.info("Invoking agent model=%s command=%s", request.model, run_args[0])
        try:
            with (
                transcript_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out, cancelled = self._run(
                    run_args=run_args,
                    env=env,
                    request=request,
                    stdin_path=stdin_path,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError:
            return GatewayResult(
                outcome=GatewayOutcome.FAILURE,
                reason=f"Agent command not found: {run_args[0]}",
            )
        except OSError as error:
            return GatewayResult(
                outcome=GatewayOutcome.FAILURE,
                reason=f"Agent command failed to start: {error}",
            )

        stdout = _read_text(transcript_path)
        stderr = _read_text(stderr_path)
        if cancelled:
            return GatewayResult(
                outcome=GatewayOutcome.FAILURE,
                text=stdout,
                reason="agent call cancelled by shutdown request",
                exit_code=exit_code,
                cancelled=True,
            )
        if timed_out:
            return GatewayResult(
                outcome=GatewayOutcome.FAILURE,
                text=stdout,
                reason=f"agent call timed out after {request.timeout_seconds}s",
                exit_code=exit_code,
            )
        if exit_code == 0:
            return GatewayResult(outcome=GatewayOutcome.SUCCESS, text=stdout, exit_code=0)

        classified = classify_agent_failure(exit_code=exit_code, stdout=stdout, stderr=stderr)
        return GatewayResult(
            outcome=classified.outcome,
            text=stdout,
            reason=classified.reason,
            exit_code=exit_code,
        )

    def _run(  # noqa: PLR0913
        self,
        *,
        run_args: list[str],
        env: dict[str, str],
        request: GatewayRequest,
        stdin_path: Path | None,
        stdout_handle: IO[str],
        stderr_handle: IO[str],
    ) -> tuple[int, bool, bool]:
        stdin_handle = stdin_path.open("r", encoding="utf-8") if stdin_path is not None else None
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=request.workdir,
                env=env,
                stdin=stdin_handle if stdin_handle is not None else subprocess.DEVNULL,
                stdout=stdout_handle,
                stderr=stderr_handle,
                text=True,
            )
        finally:
            if stdin_handle is not None:
                stdin_handle.close()

        start_monotonic = time.monotonic()
        shutdown_deadline: float | None = None
        graceful_seconds = max(0, request.graceful_shutdown_seconds or 0)

        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False, False

            now = time.monotonic()
            if now - start_monotonic >= request.timeout_seconds:
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, True, False

            if request.shutdown_requested is not None and request.shutdown_requested():
                if shutdown_deadline is None:
                    logger.warning(
                        "Shutdown requested during agent call, cancelling in %ss",
                        graceful_seconds,
                    )
                    shutdown_deadline = now + graceful_seconds
                if now >= shutdown_deadline:
                    _terminate_process(process)
                    return TIMEOUT_EXIT_CODE, False, True

            time.sleep(self.poll_seconds)


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    workdir: Path,
) -> list[str]:
    """Render the command template into argv, shell-quoting every value."""

    stripped = command_template.strip()
    if not stripped:
        raise CommandTemplateError("Agent command template is empty.")
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            workdir=shlex.quote(str(workdir)),
        )
    except (KeyError, IndexError) as error:
        raise CommandTemplateError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise CommandTemplateError("Agent command template rendered empty command.")
    return argv


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
