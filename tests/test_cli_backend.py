from __future__ import annotations

import sys
import time
from pathlib import Path

import allure
import pytest
from gateways import ECHO_AGENT_COMMAND_TEMPLATE

from agent_duo.orchestrator.backend import CliAgentGateway, GatewayRequest
from agent_duo.orchestrator.backend.cli_backend import CommandTemplateError, build_run_args
from agent_duo.orchestrator.models import GatewayOutcome

pytestmark = [
    allure.epic("Agent Gateway"),
    allure.feature("CLI Agent Invocation"),
]


def _request(tmp_path: Path, prompt: str, **kwargs) -> GatewayRequest:
    return GatewayRequest(
        model="test-model",
        prompt=prompt,
        workdir=tmp_path / "project",
        transcript_path=tmp_path / "logs" / "iteration_1_task_1.md",
        **kwargs,
    )


def test_build_run_args_quotes_each_placeholder() -> None:
    argv = build_run_args(
        command_template="claude -p --model {model} {prompt}",
        model="opus",
        prompt='build "it" now',
        prompt_file=Path("prompt.md"),
        workdir=Path("/tmp/project dir"),
    )

    assert argv == ["claude", "-p", "--model", "opus", 'build "it" now']


def test_build_run_args_supports_prompt_file_and_workdir() -> None:
    argv = build_run_args(
        command_template="agent --cwd {workdir} --input {prompt_file}",
        model="m",
        prompt="ignored",
        prompt_file=Path("/tmp/my prompt.md"),
        workdir=Path("/tmp/project dir"),
    )

    assert argv == ["agent", "--cwd", "/tmp/project dir", "--input", "/tmp/my prompt.md"]


def test_build_run_args_accepts_template_without_prompt_placeholders() -> None:
    argv = build_run_args(
        command_template="claude -p --model {model} --dangerously-skip-permissions",
        model="opus",
        prompt="fed on stdin",
        prompt_file=Path("prompt.md"),
        workdir=Path(),
    )

    assert argv == ["claude", "-p", "--model", "opus", "--dangerously-skip-permissions"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("claude {prompt} {unknown}", "placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(CommandTemplateError, match=message):
        build_run_args(
            command_template=template,
            model="m",
            prompt="p",
            prompt_file=Path("p.md"),
            workdir=Path(),
        )


def test_echo_agent_success_writes_marker_and_transcript(tmp_path: Path) -> None:
    marker = tmp_path / ".state" / "TASK_1_COMPLETE"
    gateway = CliAgentGateway(ECHO_AGENT_COMMAND_TEMPLATE)

    result = gateway.invoke(_request(tmp_path, f"Do the work.\nCompletion marker: {marker}\n"))

    assert result.outcome == GatewayOutcome.SUCCESS
    assert result.exit_code == 0
    assert "Echo agent finished." in result.text
    assert marker.exists()
    transcript = tmp_path / "logs" / "iteration_1_task_1.md"
    assert "Echo agent finished." in transcript.read_text("utf-8")
    assert (tmp_path / "logs" / "iteration_1_task_1.prompt.md").exists()


def test_echo_agent_reads_prompt_from_stdin(tmp_path: Path) -> None:
    # Only {prompt_file} is referenced, so the prompt also arrives on stdin.
    gateway = CliAgentGateway(
        f"{sys.executable} -m agent_duo.orchestrator.backend.echo_agent --unused {{prompt_file}}",
    )

    result = gateway.invoke(_request(tmp_path, "# Manager Review #2 (Iteration 6)\n"))

    assert result.ok
    assert '"verdict": "approved"' in result.text


def test_prompt_larger_than_argument_limit_goes_through_stdin(tmp_path: Path) -> None:
    # Linux caps one argv entry at 128 KiB; the default template keeps the prompt off argv.
    marker = tmp_path / ".state" / "TASK_1_COMPLETE"
    prompt = "x" * 200_000 + f"\nCompletion marker: {marker}\n"
    gateway = CliAgentGateway(f"{sys.executable} -m agent_duo.orchestrator.backend.echo_agent")

    result = gateway.invoke(_request(tmp_path, prompt))

    assert result.outcome == GatewayOutcome.SUCCESS, result.reason
    assert marker.exists()


def test_rate_limit_exit_is_classified(tmp_path: Path) -> None:
    gateway = CliAgentGateway(f"{ECHO_AGENT_COMMAND_TEMPLATE} --mode rate-limit")

    result = gateway.invoke(_request(tmp_path, "anything"))

    assert result.outcome == GatewayOutcome.RATE_LIMITED
    assert result.exit_code == 1


def test_fatal_exit_is_failure(tmp_path: Path) -> None:
    gateway = CliAgentGateway(f"{ECHO_AGENT_COMMAND_TEMPLATE} --mode fail")

    result = gateway.invoke(_request(tmp_path, "anything"))

    assert result.outcome == GatewayOutcome.FAILURE
    assert result.exit_code == 2
    assert "fatal" in (result.reason or "")


def test_missing_command_is_failure(tmp_path: Path) -> None:
    gateway = CliAgentGateway("definitely-not-an-agent-binary-xyz {prompt}")

    result = gateway.invoke(_request(tmp_path, "anything"))

    assert result.outcome == GatewayOutcome.FAILURE
    assert "not found" in (result.reason or "")


def test_bad_template_is_failure_not_exception(tmp_path: Path) -> None:
    result = CliAgentGateway("claude {prompt} {unknown}").invoke(_request(tmp_path, "anything"))

    assert result.outcome == GatewayOutcome.FAILURE
    assert "placeholder" in (result.reason or "")


def test_timeout_terminates_the_agent(tmp_path: Path) -> None:
    gateway = CliAgentGateway(f"{ECHO_AGENT_COMMAND_TEMPLATE} --mode slow", poll_seconds=0.05)

    started = time.monotonic()
    result = gateway.invoke(_request(tmp_path, "anything", timeout_seconds=1))

    assert result.outcome == GatewayOutcome.FAILURE
    assert "timed out" in (result.reason or "")
    assert time.monotonic() - started < 30


def test_shutdown_request_cancels_in_flight_call(tmp_path: Path) -> None:
    gateway = CliAgentGateway(f"{ECHO_AGENT_COMMAND_TEMPLATE} --mode slow", poll_seconds=0.05)

    started = time.monotonic()
    result = gateway.invoke(
        _request(
            tmp_path,
            "anything",
            shutdown_requested=lambda: True,
            graceful_shutdown_seconds=0,
        ),
    )

    assert result.cancelled is True
    assert result.outcome == GatewayOutcome.FAILURE
    assert time.monotonic() - started < 30
