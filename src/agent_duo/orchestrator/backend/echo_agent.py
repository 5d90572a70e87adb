"""Local deterministic agent for gateway and supervisor integration tests."""

from __future__ import annotations

import argparse
import json
import re
import sys
import time
from pathlib import Path

_COMPLETION_MARKER = re.compile(r"^Completion marker: (?P<path>.+)$", re.MULTILINE)
_REVIEW_HEADER = re.compile(r"^# Manager Review #(?P<number>\d+)", re.MULTILINE)
_PLANNING_HEADER = re.compile(r"^# Task Planning$", re.MULTILINE)
_PRD_HEADING = re.compile(r"^## PRD: (?P<name>.+)$", re.MULTILINE)


def main(argv: list[str] | None = None) -> int:
    """Answer worker prompts with the completion marker, review and planning prompts with JSON."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", default=None)
    parser.add_argument(
        "--mode",
        choices=("ok", "fail", "rate-limit", "slow"),
        default="ok",
    )
    args, _ = parser.parse_known_args(argv)

    if args.mode == "fail":
        sys.stderr.write("fatal: agent crashed while generating code\n")
        return 2
    if args.mode == "rate-limit":
        sys.stderr.write("API Error: 429 rate limit exceeded, please retry later\n")
        return 1
    if args.mode == "slow":
        time.sleep(60)

    prompt = Path(args.prompt_file).read_text("utf-8") if args.prompt_file else sys.stdin.read()

    if _PLANNING_HEADER.search(prompt) is not None:
        sys.stdout.write(_plan_reply(prompt))
        return 0

    review = _REVIEW_HEADER.search(prompt)
    if review is not None:
        sys.stdout.write(
            json.dumps(
                {
                    "score": 8,
                    "verdict": "approved",
                    "findings": f"Echo review #{review.group('number')}: looks fine.",
                    "skills": [],
                    "directive": None,
                },
            )
            + "\n",
        )
        return 0

    marker = _COMPLETION_MARKER.search(prompt)
    if marker is not None:
        marker_path = Path(marker.group("path").strip().strip("`"))
        marker_path.parent.mkdir(parents=True, exist_ok=True)
        marker_path.write_text("Implemented by echo agent.\n", "utf-8")
    sys.stdout.write("Echo agent finished.\n")
    return 0


def _plan_reply(prompt: str) -> str:
    names = [match.group("name").strip() for match in _PRD_HEADING.finditer(prompt)]
    tasks = [
        {
            "id": str(index),
            "title": f"Implement {name}",
            "description": f"Build what {name} describes.",
            "acceptanceCriteria": f"{name} requirements are met",
            "status": "pending",
            "estimatedIterations": 1,
            "dependencies": [str(index - 1)] if index > 1 else [],
        }
        for index, name in enumerate(names, start=1)
    ]
    payload = {
        "projectName": "Echo Project",
        "description": "Planned by echo agent",
        "tasks": tasks,
    }
    return f"Here is the plan.\n\n```json\n{json.dumps(payload, indent=2)}\n```\n"


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
