"""Monthly review metrics and decision history."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ru_review.review.contracts import (
    append_ndjson,
    load_state_document,
    read_ndjson,
    utc_timestamp,
    write_json,
)
from ru_review.review.locking import StateLock
from ru_review.review.plan import ReviewPlan

logger = logging.getLogger(__name__)


def current_period(moment: datetime | None = None) -> str:
    return f"{(moment or datetime.now(tz=UTC)):%Y-%m}"


def empty_metrics(period: str) -> dict[str, Any]:
    return {
        "period": period,
        "reviews": {
            "total": 0,
            "repos_reviewed": 0,
            "issues_processed": 0,
            "issues_resolved": 0,
            "questions_asked": 0,
            "questions_answered": 0,
        },
        "timing": {"total_duration_minutes": 0, "avg_per_repo_minutes": 0},
        "decisions": {"by_type": {}},
    }


@dataclass(slots=True)
class MetricsSnapshot:
    """Flattened view of one period's aggregate counters."""

    period: str
    reviews_total: int
    repos_reviewed: int
    issues_processed: int
    issues_resolved: int
    questions_asked: int
    questions_answered: int
    total_duration_minutes: float
    avg_per_repo_minutes: float
    decisions_by_type: dict[str, int]


class MetricsRecorder:
    """Owns ``metrics/<YYYY-MM>.json`` plus the append-only decision and run logs."""

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 30.0) -> None:
        self.metrics_dir = state_dir / "metrics"
        self.decisions_path = self.metrics_dir / "decisions.jsonl"
        self.runs_path = self.metrics_dir / "runs.jsonl"
        self._lock = StateLock(self.metrics_dir, "metrics", timeout_seconds=lock_timeout_seconds)

    def period_path(self, period: str | None = None) -> Path:
        return self.metrics_dir / f"{period or current_period()}.json"

    def init_period(self, period: str | None = None) -> Path:
        """Create the period file with zeroed counters; an existing file is left alone."""

        path = self.period_path(period)
        with self._lock.locked(purpose="metrics"):
            if not path.exists():
                write_json(path, empty_metrics(period or current_period()))
        return path

    def load_period(self, period: str | None = None) -> dict[str, Any] | None:
        path = self.period_path(period)
        if not path.exists():
            return None
        return load_state_document(path)

    def record_decision(
        self,
        repo_id: str,
        item_type: str,
        number: object,
        decision: str,
    ) -> None:
        append_ndjson(
            self.decisions_path,
            {
                "timestamp": utc_timestamp(),
                "repo": repo_id,
                "type": item_type,
                "number": _safe_number(number),
                "decision": decision,
            },
        )

    def record_metrics_from_plan(self, plan: ReviewPlan, *, duration_seconds: int = 0) -> None:
        """Fold one repo's plan into the period counters and the decision log."""

        for item in plan.items:
            self.record_decision(plan.repo, item.type, item.number, item.decision)

        issues = [item for item in plan.items if item.type == "issue"]
        deltas = {
            "total": 1,
            "repos_reviewed": 1,
            "issues_processed": len(issues),
            "issues_resolved": sum(1 for item in issues if item.decision == "fix"),
            "questions_asked": len(plan.questions),
            "questions_answered": sum(1 for question in plan.questions if question.answered),
        }
        self._update_period(
            review_deltas=deltas,
            duration_minutes=round(max(0, duration_seconds) / 60, 1),
            decisions=plan.decision_counts(),
        )

    def record_run_metrics(
        self,
        *,
        run_id: str,
        mode: str,
        repos_processed: int,
        duration_seconds: int,
        exit_code: int,
    ) -> None:
        append_ndjson(
            self.runs_path,
            {
                "timestamp": utc_timestamp(),
                "run_id": run_id,
                "mode": mode,
                "repos_processed": repos_processed,
                "duration_minutes": round(max(0, duration_seconds) / 60, 1),
                "exit_code": exit_code,
            },
        )

    def suggest_decision(self, repo_id: str, item_type: str) -> str | None:
        """Most frequent past decision for this repo and item type."""

        counts = Counter(
            record.get("decision")
            for record in read_ndjson(self.decisions_path)
            if record.get("repo") == repo_id and record.get("type") == item_type
        )
        counts.pop(None, None)
        if not counts:
            return None
        return counts.most_common(1)[0][0]

    def snapshot(self, period: str | None = None) -> MetricsSnapshot | None:
        payload = self.load_period(period)
        if payload is None:
            return None
        reviews = payload.get("reviews", {})
        timing = payload.get("timing", {})
        return MetricsSnapshot(
            period=str(payload.get("period", period or current_period())),
            reviews_total=int(reviews.get("total", 0)),
            repos_reviewed=int(reviews.get("repos_reviewed", 0)),
            issues_processed=int(reviews.get("issues_processed", 0)),
            issues_resolved=int(reviews.get("issues_resolved", 0)),
            questions_asked=int(reviews.get("questions_asked", 0)),
            questions_answered=int(reviews.get("questions_answered", 0)),
            total_duration_minutes=float(timing.get("total_duration_minutes", 0)),
            avg_per_repo_minutes=float(timing.get("avg_per_repo_minutes", 0)),
            decisions_by_type={
                str(key): int(value)
                for key, value in payload.get("decisions", {}).get("by_type", {}).items()
            },
        )

    def _update_period(
        self,
        *,
        review_deltas: dict[str, int],
        duration_minutes: float,
        decisions: Counter[str],
    ) -> None:
        period = current_period()
        path = self.period_path(period)
        with self._lock.locked(purpose="metrics"):
            payload = load_state_document(path) if path.exists() else empty_metrics(period)
            reviews = payload.setdefault("reviews", {})
            for key, delta in review_deltas.items():
                reviews[key] = int(reviews.get(key, 0)) + delta
            timing = payload.setdefault("timing", {})
            previous_minutes = float(timing.get("total_duration_minutes", 0))
            total_minutes = round(previous_minutes + duration_minutes, 1)
            timing["total_duration_minutes"] = total_minutes
            repos_reviewed = int(reviews.get("repos_reviewed", 0))
            timing["avg_per_repo_minutes"] = (
                round(total_minutes / repos_reviewed, 1) if repos_reviewed else 0
            )
            by_type = payload.setdefault("decisions", {}).setdefault("by_type", {})
            for decision, count in decisions.items():
                by_type[decision] = int(by_type.get(decision, 0)) + count
            write_json(path, payload)


def render_metrics_lines(snapshot: MetricsSnapshot | None, *, period: str) -> list[str]:
    """Render operator-facing analytics lines for CLI output."""

    if snapshot is None:
        return [f"No metrics found for period {period}"]
    lines = [
        f"Review Analytics ({snapshot.period})",
        f"Total reviews: {snapshot.reviews_total}",
        f"Repos reviewed: {snapshot.repos_reviewed}",
        (
            f"Issues processed: {snapshot.issues_processed} "
            f"(resolved: {snapshot.issues_resolved})"
        ),
        f"Questions: {snapshot.questions_answered}/{snapshot.questions_asked} answered",
        (
            f"Total minutes: {snapshot.total_duration_minutes} "
            f"(avg/repo: {snapshot.avg_per_repo_minutes})"
        ),
    ]
    if snapshot.decisions_by_type:
        decisions = " ".join(
            f"{key}={value}" for key, value in sorted(snapshot.decisions_by_type.items())
        )
        lines.append(f"Decisions: {decisions}")
    return lines


def _safe_number(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return 0
