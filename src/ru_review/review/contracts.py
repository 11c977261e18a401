"""On-disk JSON document contracts and atomic write helpers.

Every document the engine persists has a typed record here with a
``to_payload``/``read_*`` adapter pair. Adapters keep unknown keys in an
``extra`` mapping so documents written by newer tools survive a round trip.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ru_review.review.errors import StaleStateError

REVIEW_STATE_VERSION = 2
CHECKPOINT_VERSION = 1
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_timestamp(moment: datetime | None = None) -> str:
    """Render an ISO8601 UTC timestamp with second precision."""

    return (moment or datetime.now(tz=UTC)).astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse timestamps written by :func:`utc_timestamp` or any ISO8601 variant."""

    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed


def write_json(path: Path, payload: Mapping[str, Any]) -> None:
    """Persist JSON payload atomically using deterministic formatting."""

    write_json_atomic(path, json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))


def write_json_atomic(path: Path, content: str) -> None:
    """Validate ``content`` as JSON, then replace ``path`` via a same-directory temp file.

    A rejected write raises ``ValueError`` before anything touches the
    directory. A failed write removes its temp file and leaves the target as it was.
    """

    try:
        json.loads(content)
    except json.JSONDecodeError as error:
        raise ValueError(f"Refusing to write invalid JSON to {path}: {error}") from error

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content if content.endswith("\n") else f"{content}\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def load_state_document(path: Path) -> dict[str, Any]:
    """Load a state document, mapping any decode/shape failure to ``StaleStateError``."""

    try:
        return load_json(path)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as error:
        raise StaleStateError(f"Unreadable state document {path}: {error}") from error


def append_ndjson(path: Path, record: Mapping[str, Any]) -> None:
    """Append one compact JSON line."""

    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False, sort_keys=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"{line}\n")


def read_ndjson(path: Path) -> list[dict[str, Any]]:
    """Read JSON lines, skipping blank and malformed lines."""

    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    for line in path.read_text("utf-8").splitlines():
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            records.append(payload)
    return records


def repo_slug(repo_id: str) -> str:
    """Filesystem-safe name for a repo id: ``owner/repo`` -> ``owner_repo``.

    Ids that already contain ``_`` get a short digest suffix so ``o/a_b`` and
    ``o_a/b`` never share a slug.
    """

    slug = repo_id.replace("/", "_")
    if "_" not in repo_id:
        return slug
    digest = hashlib.sha256(repo_id.encode("utf-8")).hexdigest()[:10]
    return f"{slug}-{digest}"


@dataclass(slots=True)
class LockInfo:
    """Review lock holder metadata."""

    run_id: str
    started_at: str
    pid: int
    mode: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "pid": self.pid,
            "mode": self.mode,
        }


def read_lock_info(payload: Mapping[str, Any]) -> LockInfo:
    """Validate lock metadata payload."""

    pid = payload.get("pid")
    if isinstance(pid, bool) or not isinstance(pid, int):
        raise TypeError("lock_info.pid must be an integer")
    return LockInfo(
        run_id=str(payload.get("run_id", "")),
        started_at=str(payload.get("started_at", "")),
        pid=pid,
        mode=str(payload.get("mode", "")),
    )


_REPO_FIELDS = (
    "status",
    "outcome",
    "session_id",
    "last_review",
    "last_push_branch",
    "pushed_at",
    "duration_seconds",
    "items_processed",
    "items_fixed",
)


@dataclass(slots=True)
class RepoRecord:
    """Per-repository review outcome."""

    status: str | None = None
    outcome: str | None = None
    session_id: str | None = None
    last_review: str | None = None
    last_push_branch: str | None = None
    pushed_at: str | None = None
    duration_seconds: int | None = None
    items_processed: int | None = None
    items_fixed: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.extra)
        for name in _REPO_FIELDS:
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload


def read_repo_record(payload: Mapping[str, Any]) -> RepoRecord:
    record = RepoRecord(extra={k: v for k, v in payload.items() if k not in _REPO_FIELDS})
    for name in _REPO_FIELDS:
        if name in payload:
            setattr(record, name, payload[name])
    return record


@dataclass(slots=True)
class ItemRecord:
    """Per-issue or per-PR outcome."""

    type: str
    number: int
    outcome: str
    notes: str = ""
    recorded_at: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "type": self.type,
                "number": self.number,
                "outcome": self.outcome,
                "notes": self.notes,
                "recorded_at": self.recorded_at,
            },
        )
        return payload


_ITEM_FIELDS = ("type", "number", "outcome", "notes", "recorded_at")


def read_item_record(payload: Mapping[str, Any]) -> ItemRecord:
    number = payload.get("number", 0)
    return ItemRecord(
        type=str(payload.get("type", "")),
        number=number if isinstance(number, int) else _to_int(number),
        outcome=str(payload.get("outcome", "")),
        notes=str(payload.get("notes", payload.get("note", ""))),
        recorded_at=str(payload.get("recorded_at", "")),
        extra={k: v for k, v in payload.items() if k not in _ITEM_FIELDS},
    )


@dataclass(slots=True)
class RunRecord:
    """Summary of one completed run."""

    started_at: str
    completed_at: str
    repos_processed: int
    items_processed: int
    mode: str
    questions: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "repos_processed": self.repos_processed,
            "items_processed": self.items_processed,
            "questions": self.questions,
            "mode": self.mode,
        }


def read_run_record(payload: Mapping[str, Any]) -> RunRecord:
    return RunRecord(
        started_at=str(payload.get("started_at", "")),
        completed_at=str(payload.get("completed_at", "")),
        repos_processed=_to_int(payload.get("repos_processed", 0)),
        items_processed=_to_int(payload.get("items_processed", 0)),
        mode=str(payload.get("mode", "")),
        questions=_to_int(payload.get("questions", 0)),
    )


@dataclass(slots=True)
class ReviewState:
    """Versioned review state document."""

    version: int = REVIEW_STATE_VERSION
    repos: dict[str, RepoRecord] = field(default_factory=dict)
    items: dict[str, ItemRecord] = field(default_factory=dict)
    runs: dict[str, RunRecord] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "version": self.version,
                "repos": {key: value.to_payload() for key, value in self.repos.items()},
                "items": {key: value.to_payload() for key, value in self.items.items()},
                "runs": {key: value.to_payload() for key, value in self.runs.items()},
            },
        )
        return payload


def read_review_state(payload: Mapping[str, Any]) -> ReviewState:
    """Validate and adapt the review state document."""

    for section in ("repos", "items", "runs"):
        if not isinstance(payload.get(section, {}), dict):
            raise TypeError(f"review_state.{section} must be an object")
    return ReviewState(
        version=_to_int(payload.get("version", REVIEW_STATE_VERSION)),
        repos={
            key: read_repo_record(value)
            for key, value in payload.get("repos", {}).items()
            if isinstance(value, dict)
        },
        items={
            key: read_item_record(value)
            for key, value in payload.get("items", {}).items()
            if isinstance(value, dict)
        },
        runs={
            key: read_run_record(value)
            for key, value in payload.get("runs", {}).items()
            if isinstance(value, dict)
        },
        extra={k: v for k, v in payload.items() if k not in {"version", "repos", "items", "runs"}},
    )


@dataclass(slots=True)
class Checkpoint:
    """Durable run-progress snapshot used to gate resume vs. restart."""

    run_id: str
    mode: str
    config_hash: str
    completed_repos: list[str]
    pending_repos: list[str]
    phase: str = "dispatch"
    repos_total: int = 0
    questions_pending: int = 0
    timestamp: str = ""
    version: int = CHECKPOINT_VERSION

    def to_payload(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "timestamp": self.timestamp or utc_timestamp(),
            "run_id": self.run_id,
            "mode": self.mode,
            "phase": self.phase,
            "config_hash": self.config_hash,
            "repos_total": self.repos_total
            or len(self.completed_repos) + len(self.pending_repos),
            "repos_completed": len(self.completed_repos),
            "repos_pending": len(self.pending_repos),
            "questions_pending": self.questions_pending,
            "completed_repos": list(self.completed_repos),
            "pending_repos": list(self.pending_repos),
        }

    @property
    def is_complete(self) -> bool:
        return not self.pending_repos


def read_checkpoint(payload: Mapping[str, Any]) -> Checkpoint:
    """Validate checkpoint payload."""

    completed = payload.get("completed_repos", [])
    pending = payload.get("pending_repos", [])
    if not isinstance(completed, list) or not isinstance(pending, list):
        raise TypeError("checkpoint.completed_repos and pending_repos must be arrays")
    return Checkpoint(
        version=_to_int(payload.get("version", CHECKPOINT_VERSION)),
        timestamp=str(payload.get("timestamp", "")),
        run_id=str(payload.get("run_id", "")),
        mode=str(payload.get("mode", "")),
        phase=str(payload.get("phase", "dispatch")),
        config_hash=str(payload.get("config_hash", "")),
        repos_total=_to_int(payload.get("repos_total", 0)),
        questions_pending=_to_int(payload.get("questions_pending", 0)),
        completed_repos=[str(item) for item in completed],
        pending_repos=[str(item) for item in pending],
    )


@dataclass(slots=True)
class PreflightResult:
    """One admission decision for one repository."""

    repo_id: str
    path: str
    passed: bool
    skip_reason: str | None = None
    run_id: str = ""
    checked_at: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "timestamp": self.checked_at or utc_timestamp(),
            "run_id": self.run_id,
            "repo": self.repo_id,
            "path": self.path,
            "status": "passed" if self.passed else "failed",
            "reason": self.skip_reason,
        }


@dataclass(slots=True)
class WorktreeEntry:
    """Run-scoped worktree mapping entry for one repository."""

    worktree_path: str
    branch: str
    base_ref: str
    base_commit: str
    repo_path: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "worktree_path": self.worktree_path,
            "branch": self.branch,
            "base_ref": self.base_ref,
            "base_commit": self.base_commit,
            "repo_path": self.repo_path,
        }


def read_worktree_entry(payload: Mapping[str, Any]) -> WorktreeEntry:
    worktree_path = payload.get("worktree_path")
    branch = payload.get("branch")
    if not isinstance(worktree_path, str) or not isinstance(branch, str):
        raise TypeError("worktree mapping entries need string worktree_path and branch")
    return WorktreeEntry(
        worktree_path=worktree_path,
        branch=branch,
        base_ref=str(payload.get("base_ref", "")),
        base_commit=str(payload.get("base_commit", "")),
        repo_path=str(payload.get("repo_path", "")),
    )


def _to_int(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return 0
