from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from agent_duo.orchestrator.models import ReviewRecord, ReviewVerdict
from agent_duo.orchestrator.reviews import (
    ReviewLedger,
    ReviewRecordExistsError,
    parse_review_response,
    render_final_report,
)

pytestmark = [
    allure.epic("Manager"),
    allure.feature("Review Records"),
]


def _record(number: int, verdict: ReviewVerdict = ReviewVerdict.APPROVED, **kwargs) -> ReviewRecord:
    values = {
        "review_number": number,
        "iteration": number * 3,
        "task_id": "1",
        "verdict": verdict,
        "score": 7,
        "findings": f"Findings for review {number}",
        "created_at": datetime(2025, 1, 1, tzinfo=UTC),
    }
    values.update(kwargs)
    return ReviewRecord(**values)


def test_parse_direct_json() -> None:
    parsed = parse_review_response(
        '{"score": 9, "verdict": "approved", "findings": "Clean code.",'
        ' "skills": [{"name": "Error Handling", "content": "Wrap IO in try."}],'
        ' "directive": "Add tests next."}',
    )

    assert parsed.verdict == ReviewVerdict.APPROVED
    assert parsed.score == 9
    assert parsed.findings == "Clean code."
    assert [skill.name for skill in parsed.skills] == ["Error Handling"]
    assert parsed.directive == "Add tests next."
    assert parsed.parser == "json"


def test_parse_fenced_json_with_surrounding_prose() -> None:
    parsed = parse_review_response(
        "Here is my review:\n```json\n"
        '{"score": "4", "verdict": "needs work", "findings": ["no tests", "dead code"],'
        ' "directive": null}\n```\nThanks!',
    )

    assert parsed.verdict == ReviewVerdict.NEEDS_WORK
    assert parsed.score == 4
    assert parsed.findings == "- no tests\n- dead code"
    assert parsed.directive is None


def test_parse_outer_braces_and_clamps_score() -> None:
    parsed = parse_review_response('Result -> {"score": 42, "verdict": "approved"} <- done')

    assert parsed.score == 10
    assert parsed.verdict == ReviewVerdict.APPROVED


def test_parse_drops_malformed_skills() -> None:
    parsed = parse_review_response(
        '{"verdict": "approved", "skills": ["loose", {"name": "x"}, {"name": " ", "content": "y"},'
        ' {"name": "ok", "content": "body"}]}',
    )

    assert [(skill.name, skill.content) for skill in parsed.skills] == [("ok", "body")]


@pytest.mark.parametrize(
    ("text", "verdict"),
    [
        ("Overall APPROVED, nice work.", ReviewVerdict.APPROVED),
        ("NEEDS_WORK: missing validation. Not APPROVED yet.", ReviewVerdict.NEEDS_WORK),
        ("I could not decide.", ReviewVerdict.NEEDS_WORK),
        ("", ReviewVerdict.NEEDS_WORK),
    ],
)
def test_plain_text_fallback(text: str, verdict: ReviewVerdict) -> None:
    parsed = parse_review_response(text)

    assert parsed.verdict == verdict
    assert parsed.score is None
    assert parsed.parser == "plain_text"
    assert parsed.findings == text.strip()


def test_ledger_is_write_once_and_sorted(tmp_path: Path) -> None:
    ledger = ReviewLedger(tmp_path / "reviews")
    ledger.write(_record(2, skills=["error-handling"]))
    ledger.write(_record(1, ReviewVerdict.NEEDS_WORK, score=None))

    with pytest.raises(ReviewRecordExistsError):
        ledger.write(_record(1))

    records = ledger.list_records()
    assert [record.review_number for record in records] == [1, 2]
    assert records[0].verdict == ReviewVerdict.NEEDS_WORK
    assert records[0].score is None
    assert records[1].skills == ["error-handling"]
    assert records[1].created_at == datetime(2025, 1, 1, tzinfo=UTC)


def test_ledger_skips_unreadable_records(tmp_path: Path) -> None:
    ledger = ReviewLedger(tmp_path / "reviews")
    ledger.write(_record(1))
    (tmp_path / "reviews" / "review_2.json").write_text("{not json", "utf-8")

    assert [record.review_number for record in ledger.list_records()] == [1]


def test_final_report_aggregates_records_and_skills() -> None:
    report = render_final_report(
        records=[_record(1, score=6), _record(2, ReviewVerdict.NEEDS_WORK, score=8)],
        skill_names=["error-handling", "testing"],
        generated_at=datetime(2025, 1, 2, tzinfo=UTC),
    )

    assert "Total Reviews Conducted: 2" in report
    assert "Approved: 1" in report
    assert "Average score: 7.0" in report
    assert "### Review #1 (iteration 3)" in report
    assert "### Review #2 (iteration 6)" in report
    assert "- Verdict: needs_work" in report
    assert "- error-handling" in report
    assert "- testing" in report


def test_final_report_without_reviews() -> None:
    report = render_final_report(
        records=[],
        skill_names=[],
        generated_at=datetime(2025, 1, 2, tzinfo=UTC),
    )

    assert "Total Reviews Conducted: 0" in report
    assert "No reviews were conducted." in report
    assert "No skills generated." in report
