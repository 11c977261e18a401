from __future__ import annotations

import json
from pathlib import Path

import allure

from ru_review.review.metrics import (
    MetricsRecorder,
    current_period,
    empty_metrics,
    render_metrics_lines,
)
from ru_review.review.plan import parse_review_plan

pytestmark = [
    allure.epic("Review Engine"),
    allure.feature("Review Metrics"),
]


def _plan(repo: str = "o/r"):
    return parse_review_plan(
        {
            "schema_version": 1,
            "repo": repo,
            "items": [
                {"type": "issue", "number": 1, "decision": "fix"},
                {"type": "issue", "number": 2, "decision": "skip"},
                {"type": "pr", "number": 3, "decision": "merge"},
            ],
            "questions": [
                {"id": "q1", "answered": True},
                {"id": "q2", "answered": False},
            ],
        },
    )


def test_init_period_never_overwrites(tmp_path: Path) -> None:
    recorder = MetricsRecorder(tmp_path)

    path = recorder.init_period("2026-01")
    assert json.loads(path.read_text("utf-8")) == empty_metrics("2026-01")

    path.write_text(json.dumps({"period": "2026-01", "reviews": {"total": 9}}), "utf-8")
    recorder.init_period("2026-01")
    assert json.loads(path.read_text("utf-8"))["reviews"]["total"] == 9


def test_plan_metrics_accumulate_per_period(tmp_path: Path) -> None:
    recorder = MetricsRecorder(tmp_path)

    recorder.record_metrics_from_plan(_plan("o/a"), duration_seconds=90)
    recorder.record_metrics_from_plan(_plan("o/b"), duration_seconds=30)

    snapshot = recorder.snapshot()
    assert snapshot is not None
    assert snapshot.period == current_period()
    assert snapshot.reviews_total == 2
    assert snapshot.repos_reviewed == 2
    assert snapshot.issues_processed == 4
    assert snapshot.issues_resolved == 2
    assert snapshot.questions_asked == 4
    assert snapshot.questions_answered == 2
    assert snapshot.total_duration_minutes == 2.0
    assert snapshot.avg_per_repo_minutes == 1.0
    assert snapshot.decisions_by_type == {"fix": 2, "skip": 2, "merge": 2}


def test_decision_log_feeds_suggestions(tmp_path: Path) -> None:
    recorder = MetricsRecorder(tmp_path)
    recorder.record_decision("o/r", "issue", 1, "skip")
    recorder.record_decision("o/r", "issue", "2", "skip")
    recorder.record_decision("o/r", "issue", "n/a", "fix")
    recorder.record_decision("o/r", "pr", 4, "merge")

    assert recorder.suggest_decision("o/r", "issue") == "skip"
    assert recorder.suggest_decision("o/r", "pr") == "merge"
    assert recorder.suggest_decision("o/other", "issue") is None

    lines = recorder.decisions_path.read_text("utf-8").splitlines()
    assert [json.loads(line)["number"] for line in lines] == [1, 2, 0, 4]


def test_run_metrics_are_appended(tmp_path: Path) -> None:
    recorder = MetricsRecorder(tmp_path)

    recorder.record_run_metrics(
        run_id="run-1",
        mode="plan",
        repos_processed=3,
        duration_seconds=150,
        exit_code=1,
    )

    record = json.loads(recorder.runs_path.read_text("utf-8"))
    assert record["run_id"] == "run-1"
    assert record["duration_minutes"] == 2.5
    assert record["exit_code"] == 1


def test_render_lines(tmp_path: Path) -> None:
    recorder = MetricsRecorder(tmp_path)
    assert render_metrics_lines(recorder.snapshot("2020-01"), period="2020-01") == [
        "No metrics found for period 2020-01",
    ]

    recorder.record_metrics_from_plan(_plan(), duration_seconds=60)
    lines = render_metrics_lines(recorder.snapshot(), period=current_period())

    assert lines[0] == f"Review Analytics ({current_period()})"
    assert "Issues processed: 2 (resolved: 1)" in lines
    assert "Questions: 1/2 answered" in lines
    assert "Total minutes: 1.0 (avg/repo: 1.0)" in lines
    assert lines[-1] == "Decisions: fix=1 merge=1 skip=1"
