"""Lock-guarded review state document."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from ru_review.review.contracts import (
    ItemRecord,
    RepoRecord,
    ReviewState,
    RunRecord,
    load_state_document,
    parse_timestamp,
    read_review_state,
    utc_timestamp,
    write_json,
)
from ru_review.review.errors import StaleStateError
from ru_review.review.locking import StateLock

logger = logging.getLogger(__name__)


def item_key(repo_id: str, item_type: str, number: int | str) -> str:
    """State key for one issue/PR: ``owner/repo#issue-42``."""

    return f"{repo_id}#{item_type}-{number}"


class StateStore:
    """Read-merge-write access to ``review/review-state.json`` under the state lock."""

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 30.0) -> None:
        self.state_dir = state_dir
        self.review_dir = state_dir / "review"
        self.state_path = self.review_dir / "review-state.json"
        self.questions_path = self.review_dir / "review-questions.json"
        self._lock = StateLock(self.review_dir, "state", timeout_seconds=lock_timeout_seconds)

    @contextmanager
    def state_lock(self) -> Iterator[None]:
        with self._lock.locked(purpose="review-state"):
            yield

    def init(self) -> ReviewState:
        """Create the document if missing; existing content, unknown keys included, is kept.

        An unreadable document is moved aside and replaced with an empty one.
        """

        with self.state_lock():
            if self.state_path.exists():
                try:
                    return self._read()
                except StaleStateError:
                    backup = self.state_path.with_name(
                        f"{self.state_path.name}.corrupt-{datetime.now(tz=UTC):%Y%m%dT%H%M%S}",
                    )
                    self.state_path.replace(backup)
                    logger.warning("Moved unreadable review state aside to %s", backup)
            state = ReviewState()
            write_json(self.state_path, state.to_payload())
            return state

    def load(self) -> ReviewState:
        """Snapshot read; a missing document reads as empty state."""

        if not self.state_path.exists():
            return ReviewState()
        return self._read()

    def update(self, mutate: Callable[[ReviewState], None]) -> ReviewState:
        """Apply ``mutate`` to the current document and write it back atomically."""

        with self.state_lock():
            state = self._read() if self.state_path.exists() else ReviewState()
            mutate(state)
            write_json(self.state_path, state.to_payload())
            return state

    def update_review_state(self, patch: Mapping[str, Any]) -> ReviewState:
        """Deep-merge an arbitrary patch into the raw document."""

        with self.state_lock():
            payload = (
                load_state_document(self.state_path)
                if self.state_path.exists()
                else ReviewState().to_payload()
            )
            merged = _deep_merge(payload, patch)
            state = _adapt(merged, self.state_path)
            write_json(self.state_path, state.to_payload())
            return state

    def record_item_outcome(
        self,
        repo_id: str,
        item_type: str,
        number: int,
        outcome: str,
        notes: str = "",
    ) -> None:
        def _mutate(state: ReviewState) -> None:
            state.items[item_key(repo_id, item_type, number)] = ItemRecord(
                type=item_type,
                number=number,
                outcome=outcome,
                notes=notes,
                recorded_at=utc_timestamp(),
            )

        self.update(_mutate)

    def record_repo_outcome(  # noqa: PLR0913
        self,
        repo_id: str,
        outcome: str,
        *,
        duration_seconds: int = 0,
        items_processed: int = 0,
        items_fixed: int = 0,
        status: str = "completed",
    ) -> None:
        def _mutate(state: ReviewState) -> None:
            record = state.repos.setdefault(repo_id, RepoRecord())
            record.status = status
            record.outcome = outcome
            record.last_review = utc_timestamp()
            record.duration_seconds = duration_seconds
            record.items_processed = items_processed
            record.items_fixed = items_fixed

        self.update(_mutate)

    def mark_repo_status(self, repo_id: str, status: str, *, session_id: str | None = None) -> None:
        def _mutate(state: ReviewState) -> None:
            record = state.repos.setdefault(repo_id, RepoRecord())
            record.status = status
            if session_id is not None:
                record.session_id = session_id

        self.update(_mutate)

    def record_review_run(  # noqa: PLR0913
        self,
        run_id: str,
        *,
        started_at: str,
        repos_processed: int,
        items_processed: int,
        questions: int,
        mode: str,
    ) -> None:
        def _mutate(state: ReviewState) -> None:
            state.runs[run_id] = RunRecord(
                started_at=started_at,
                completed_at=utc_timestamp(),
                repos_processed=repos_processed,
                items_processed=items_processed,
                questions=questions,
                mode=mode,
            )

        self.update(_mutate)

    def record_push(self, repo_id: str, *, branch: str) -> str:
        pushed_at = utc_timestamp()

        def _mutate(state: ReviewState) -> None:
            record = state.repos.setdefault(repo_id, RepoRecord())
            record.last_push_branch = branch
            record.pushed_at = pushed_at

        self.update(_mutate)
        return pushed_at

    def clear_run_state(self, run_id: str, repo_ids: list[str]) -> None:
        """Forget a run and reset in-flight repo statuses; used by ``--restart``."""

        def _mutate(state: ReviewState) -> None:
            state.runs.pop(run_id, None)
            for repo_id in repo_ids:
                record = state.repos.get(repo_id)
                if record is not None and record.status == "in_progress":
                    record.status = None
                    record.session_id = None

        self.update(_mutate)

    def is_recently_reviewed(self, repo_id: str, days: int) -> bool:
        record = self.load().repos.get(repo_id)
        if record is None or not record.last_review:
            return False
        try:
            last_review = parse_timestamp(record.last_review)
        except ValueError:
            return False
        return datetime.now(tz=UTC) - last_review < timedelta(days=days)

    def queue_questions(self, repo_id: str, questions: list[dict[str, Any]]) -> int:
        """Append unanswered questions to the shared queue; returns queue length."""

        with self.state_lock():
            payload: dict[str, Any] = {"pending": [], "answered": []}
            if self.questions_path.exists():
                payload = load_state_document(self.questions_path)
            pending = payload.setdefault("pending", [])
            payload.setdefault("answered", [])
            known = {(entry.get("repo"), entry.get("id")) for entry in pending}
            for question in questions:
                key = (repo_id, question.get("id"))
                if key in known:
                    continue
                known.add(key)
                pending.append({**question, "repo": repo_id, "queued_at": utc_timestamp()})
            write_json(self.questions_path, payload)
            return len(pending)

    def pending_questions(self) -> list[dict[str, Any]]:
        if not self.questions_path.exists():
            return []
        pending = load_state_document(self.questions_path).get("pending", [])
        return [entry for entry in pending if isinstance(entry, dict)]

    def _read(self) -> ReviewState:
        return _adapt(load_state_document(self.state_path), self.state_path)


def _adapt(payload: Mapping[str, Any], path: Path) -> ReviewState:
    try:
        return read_review_state(payload)
    except TypeError as error:
        raise StaleStateError(f"Unexpected review state shape in {path}: {error}") from error


def _deep_merge(base: dict[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged
