"""Review response parsing, write-once review records and the final report."""

from __future__ import annotations

import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from agent_duo.orchestrator.models import ParsedReview, ReviewRecord, ReviewVerdict, SkillDraft
from agent_duo.orchestrator.state import atomic_write_text, from_iso, load_json, to_iso, write_json

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_FINDINGS_LIMIT = 4_000


class ReviewRecordExistsError(RuntimeError):
    """Review records are written once and never replaced."""


def parse_review_response(text: str) -> ParsedReview:
    """Extract the structured review from agent output, falling back to plain text."""

    stripped = text.strip()
    payload = extract_json_object(stripped) if stripped else None
    if payload is not None:
        return _from_payload(payload)

    upper = stripped.upper()
    verdict = (
        ReviewVerdict.APPROVED
        if "APPROVED" in upper and "NEEDS_WORK" not in upper and "NEEDS WORK" not in upper
        else ReviewVerdict.NEEDS_WORK
    )
    return ParsedReview(
        verdict=verdict,
        score=None,
        findings=stripped[:_FINDINGS_LIMIT],
        parser="plain_text",
    )


def _from_payload(payload: dict[str, Any]) -> ParsedReview:
    verdict_raw = str(payload.get("verdict") or "").strip().lower().replace(" ", "_")
    verdict = (
        ReviewVerdict.APPROVED
        if verdict_raw == ReviewVerdict.APPROVED.value
        else ReviewVerdict.NEEDS_WORK
    )

    score = _coerce_score(payload.get("score"))

    findings_raw = payload.get("findings", "")
    if isinstance(findings_raw, list):
        findings = "\n".join(f"- {item}" for item in findings_raw)
    else:
        findings = str(findings_raw or "")

    skills: list[SkillDraft] = []
    raw_skills = payload.get("skills")
    if isinstance(raw_skills, list):
        for item in raw_skills:
            if not isinstance(item, dict):
                continue
            name = item.get("name")
            content = item.get("content")
            if not isinstance(name, str) or not isinstance(content, str):
                continue
            if name.strip() and content.strip():
                skills.append(SkillDraft(name=name.strip(), content=content))

    directive_raw = payload.get("directive")
    directive = None
    if isinstance(directive_raw, str) and directive_raw.strip():
        directive = directive_raw.strip()

    return ParsedReview(
        verdict=verdict,
        score=score,
        findings=findings[:_FINDINGS_LIMIT],
        skills=skills,
        directive=directive,
    )


def _coerce_score(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return max(1, min(10, int(value)))
    if isinstance(value, str) and value.strip().isdigit():
        return max(1, min(10, int(value.strip())))
    return None


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Find a JSON object in agent output: whole text, fenced block, then outer braces."""

    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(text[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


class ReviewLedger:
    """Review records stored as `reviews/review_<n>.json`."""

    def __init__(self, reviews_dir: Path) -> None:
        self.reviews_dir = reviews_dir

    def record_path(self, review_number: int) -> Path:
        return self.reviews_dir / f"review_{review_number}.json"

    def write(self, record: ReviewRecord) -> Path:
        path = self.record_path(record.review_number)
        if path.exists():
            raise ReviewRecordExistsError(f"Review record already exists: {path}")
        write_json(
            path,
            {
                "review_number": record.review_number,
                "iteration": record.iteration,
                "task_id": record.task_id,
                "verdict": record.verdict.value,
                "score": record.score,
                "findings": record.findings,
                "skills": list(record.skills),
                "directive_issued": record.directive_issued,
                "model": record.model,
                "created_at": to_iso(record.created_at),
            },
        )
        return path

    def list_records(self) -> list[ReviewRecord]:
        if not self.reviews_dir.exists():
            return []
        records: list[ReviewRecord] = []
        for path in self.reviews_dir.glob("review_*.json"):
            try:
                raw = load_json(path)
            except (ValueError, TypeError):
                continue
            records.append(
                ReviewRecord(
                    review_number=int(raw.get("review_number", 0)),
                    iteration=int(raw.get("iteration", 0)),
                    task_id=raw.get("task_id"),
                    verdict=_parse_verdict(raw.get("verdict")),
                    score=_coerce_score(raw.get("score")),
                    findings=str(raw.get("findings") or ""),
                    skills=[str(name) for name in raw.get("skills") or []],
                    directive_issued=bool(raw.get("directive_issued", False)),
                    model=str(raw.get("model") or ""),
                    created_at=from_iso(raw.get("created_at")),
                ),
            )
        records.sort(key=lambda record: record.review_number)
        return records


def _parse_verdict(value: object) -> ReviewVerdict:
    try:
        return ReviewVerdict(str(value))
    except ValueError:
        return ReviewVerdict.NEEDS_WORK


def render_final_report(
    *,
    records: list[ReviewRecord],
    skill_names: list[str],
    generated_at: datetime,
) -> str:
    """Aggregate every review record and skill name into Markdown."""

    approved = sum(1 for record in records if record.verdict == ReviewVerdict.APPROVED)
    scores = [record.score for record in records if record.score is not None]
    average = f"{sum(scores) / len(scores):.1f}" if scores else "-"

    lines = [
        "# Manager Final Report",
        "",
        f"Generated: {to_iso(generated_at)}",
        f"Total Reviews Conducted: {len(records)}",
        f"Approved: {approved}",
        f"Needs work: {len(records) - approved}",
        f"Average score: {average}",
        "",
        "## Summary of Reviews",
        "",
    ]
    if not records:
        lines.extend(["No reviews were conducted.", ""])
    for record in records:
        lines.extend(
            [
                f"### Review #{record.review_number} (iteration {record.iteration})",
                f"- Task: {record.task_id or '-'}",
                f"- Verdict: {record.verdict.value}",
                f"- Score: {record.score if record.score is not None else '-'}",
                "",
                record.findings.strip() or "_No findings recorded._",
                "",
            ],
        )

    lines.extend(["## Skills Generated", ""])
    if not skill_names:
        lines.append("No skills generated.")
    lines.extend(f"- {name}" for name in skill_names)
    return "\n".join(lines) + "\n"


def write_final_report(path: Path, text: str) -> None:
    atomic_write_text(path, text)
