from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from conftest import RepoFactory, git

from ru_review.review.contracts import WorktreeEntry
from ru_review.review.errors import GitCommandError, PushUnsafeError
from ru_review.review.plan import plan_path_for
from ru_review.review.push import PushCoordinator
from ru_review.review.repos import RepoTarget
from ru_review.review.state import StateStore
from ru_review.review.worktrees import WorktreeOrchestrator

pytestmark = [
    allure.epic("Review Engine"),
    allure.feature("Push Coordinator"),
]

REPO_ID = "o/alpha"


def _prepare(repo_factory: RepoFactory, state_dir: Path) -> tuple[Path, WorktreeEntry]:
    repo = repo_factory.create("alpha")
    entry = WorktreeOrchestrator(state_dir=state_dir, run_id="run-1").prepare(
        [RepoTarget(repo_id=REPO_ID, local_path=repo)],
    )[REPO_ID]
    return repo, entry


def _write_plan(entry: WorktreeEntry, **git_overrides) -> None:
    worktree = Path(entry.worktree_path)
    plan_git = {
        "branch": entry.branch,
        "base_ref": entry.base_ref,
        "commits": [],
        "tests": {"ran": True, "ok": True},
    }
    plan_git.update(git_overrides)
    payload = {"schema_version": 1, "repo": REPO_ID, "items": [], "git": plan_git}
    path = plan_path_for(worktree)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), "utf-8")


def _remote_head(repo_factory: RepoFactory) -> str:
    return git(repo_factory.remote_path("alpha"), "rev-parse", "main")


def _coordinator(state_dir: Path, **kwargs) -> PushCoordinator:
    return PushCoordinator(state_store=StateStore(state_dir), run_id="run-1", **kwargs)


def test_push_fast_forwards_and_archives_plan(repo_factory: RepoFactory, tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    repo, entry = _prepare(repo_factory, state_dir)
    worktree = Path(entry.worktree_path)
    fix_commit = repo_factory.commit(worktree, "fix.txt", "fixed\n", "Fix issue #1")
    _write_plan(entry)

    result = _coordinator(state_dir).push_worktree_changes(
        REPO_ID,
        worktree,
        base_commit=entry.base_commit,
    )

    assert result.pushed_commit == fix_commit
    assert result.base_ref == "main"
    assert result.branch == entry.branch
    assert git(repo, "rev-parse", "main") == fix_commit
    assert _remote_head(repo_factory) == fix_commit
    assert result.archive_path == state_dir / "review" / "applied-plans" / "run-1" / "o_alpha.json"
    assert json.loads(result.archive_path.read_text("utf-8"))["repo"] == REPO_ID
    record = StateStore(state_dir).load().repos[REPO_ID]
    assert record.last_push_branch == "main"
    assert record.pushed_at == result.pushed_at


@pytest.mark.parametrize(
    ("plan_overrides", "message"),
    [
        ({"tests": {"ran": True, "ok": False}}, "Tests failed"),
        ({"quality_gates_ok": False}, "Quality gates failed"),
        ({"branch": "some/other-branch"}, "does not match worktree branch"),
        ({"base_ref": "missing-base"}, "does not exist locally"),
    ],
)
def test_unsafe_plans_leave_remote_untouched(
    repo_factory: RepoFactory,
    tmp_path: Path,
    plan_overrides: dict,
    message: str,
) -> None:
    state_dir = tmp_path / "state"
    _, entry = _prepare(repo_factory, state_dir)
    worktree = Path(entry.worktree_path)
    repo_factory.commit(worktree, "fix.txt", "fixed\n", "Fix")
    _write_plan(entry, **plan_overrides)
    before = _remote_head(repo_factory)

    with pytest.raises(PushUnsafeError, match=message):
        _coordinator(state_dir).push_worktree_changes(REPO_ID, worktree)

    assert _remote_head(repo_factory) == before


def test_unanswered_questions_block_push(repo_factory: RepoFactory, tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    _, entry = _prepare(repo_factory, state_dir)
    worktree = Path(entry.worktree_path)
    path = plan_path_for(worktree)
    path.parent.mkdir(parents=True)
    path.write_text(
        json.dumps(
            {
                "schema_version": 1,
                "repo": REPO_ID,
                "items": [],
                "questions": [{"id": "q1", "prompt": "Ship it?", "answered": False}],
            },
        ),
        "utf-8",
    )

    with pytest.raises(PushUnsafeError, match="1 plan questions are unanswered: q1"):
        _coordinator(state_dir).verify_push_safe(REPO_ID, path, worktree)


def test_plan_for_another_repo_is_refused(repo_factory: RepoFactory, tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    _, entry = _prepare(repo_factory, state_dir)
    _write_plan(entry)

    with pytest.raises(PushUnsafeError, match="not o/beta"):
        _coordinator(state_dir).verify_push_safe(
            "o/beta",
            plan_path_for(Path(entry.worktree_path)),
        )


def test_failing_gates_override_allows_push(repo_factory: RepoFactory, tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    _, entry = _prepare(repo_factory, state_dir)
    worktree = Path(entry.worktree_path)
    fix_commit = repo_factory.commit(worktree, "fix.txt", "fixed\n", "Fix")
    _write_plan(entry, tests={"ran": True, "ok": False})

    result = _coordinator(state_dir, allow_failing_gates=True).push_worktree_changes(
        REPO_ID,
        worktree,
    )

    assert result.pushed_commit == fix_commit


def test_rewritten_base_is_a_merge_conflict(repo_factory: RepoFactory, tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    repo, entry = _prepare(repo_factory, state_dir)
    worktree = Path(entry.worktree_path)
    repo_factory.commit(worktree, "fix.txt", "fixed\n", "Fix")
    _write_plan(entry)
    git(repo, "commit", "--quiet", "--amend", "-m", "Rewritten history")
    before = _remote_head(repo_factory)

    with pytest.raises(PushUnsafeError) as excinfo:
        _coordinator(state_dir).push_worktree_changes(
            REPO_ID,
            worktree,
            base_commit=entry.base_commit,
        )

    assert excinfo.value.error_kind == "merge_conflict"
    assert _remote_head(repo_factory) == before


def test_non_fast_forward_is_a_merge_conflict(repo_factory: RepoFactory, tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    repo, entry = _prepare(repo_factory, state_dir)
    worktree = Path(entry.worktree_path)
    repo_factory.commit(worktree, "fix.txt", "fixed\n", "Fix")
    _write_plan(entry)
    main_tip = repo_factory.commit(repo, "other.txt", "other\n", "Concurrent change")

    with pytest.raises(PushUnsafeError, match="Cannot fast-forward") as excinfo:
        _coordinator(state_dir).push_worktree_changes(
            REPO_ID,
            worktree,
            base_commit=entry.base_commit,
        )

    assert excinfo.value.error_kind == "merge_conflict"
    assert git(repo, "rev-parse", "main") == main_tip


def test_rejected_push_rolls_back_local_base(repo_factory: RepoFactory, tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    repo, entry = _prepare(repo_factory, state_dir)
    worktree = Path(entry.worktree_path)
    repo_factory.commit(worktree, "fix.txt", "fixed\n", "Fix")
    _write_plan(entry)
    other = tmp_path / "other"
    git(tmp_path, "clone", "--quiet", str(repo_factory.remote_path("alpha")), str(other))
    git(other, "config", "user.email", "other@example.com")
    git(other, "config", "user.name", "Other")
    remote_tip = repo_factory.commit(other, "remote.txt", "remote\n", "Remote change")
    git(other, "push", "--quiet")
    local_before = git(repo, "rev-parse", "main")

    with pytest.raises(GitCommandError) as excinfo:
        _coordinator(state_dir).push_worktree_changes(REPO_ID, worktree)

    assert excinfo.value.error_kind == "push_rejected"
    assert git(repo, "rev-parse", "main") == local_before
    assert _remote_head(repo_factory) == remote_tip


def test_dirty_main_checkout_is_refused(repo_factory: RepoFactory, tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    repo, entry = _prepare(repo_factory, state_dir)
    worktree = Path(entry.worktree_path)
    repo_factory.commit(worktree, "fix.txt", "fixed\n", "Fix")
    _write_plan(entry)
    (repo / "README.md").write_text("local edit\n", "utf-8")

    with pytest.raises(PushUnsafeError, match="uncommitted changes"):
        _coordinator(state_dir).push_worktree_changes(REPO_ID, worktree)
