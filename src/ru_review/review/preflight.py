"""Per-repo admission checks run before any worktree is allocated."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path

from ru_review.config import PreflightSettings
from ru_review.review.contracts import PreflightResult, append_ndjson, utc_timestamp
from ru_review.review.errors import GitCommandError
from ru_review.review.gitcmd import git_dir, git_output, is_git_repo, run_git
from ru_review.review.repos import RepoTarget

logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    """Why a repository was refused admission."""

    NOT_A_GIT_REPO = "not_a_git_repo"
    GIT_EMAIL_NOT_CONFIGURED = "git_email_not_configured"
    GIT_NAME_NOT_CONFIGURED = "git_name_not_configured"
    SHALLOW_CLONE = "shallow_clone"
    DIRTY_SUBMODULES = "dirty_submodules"
    REBASE_IN_PROGRESS = "rebase_in_progress"
    MERGE_IN_PROGRESS = "merge_in_progress"
    CHERRY_PICK_IN_PROGRESS = "cherry_pick_in_progress"
    DETACHED_HEAD = "detached_HEAD"
    NO_UPSTREAM_BRANCH = "no_upstream_branch"
    DIVERGED_FROM_UPSTREAM = "diverged_from_upstream"
    UNMERGED_PATHS = "unmerged_paths"
    DIFF_CHECK_FAILED = "diff_check_failed"
    TOO_MANY_UNTRACKED_FILES = "too_many_untracked_files"
    GIT_ERROR = "git_error"


_SKIP_REASON_MESSAGES: dict[SkipReason, str] = {
    SkipReason.NOT_A_GIT_REPO: "Path is not a git repository",
    SkipReason.GIT_EMAIL_NOT_CONFIGURED: "Git user.email is not configured",
    SkipReason.GIT_NAME_NOT_CONFIGURED: "Git user.name is not configured",
    SkipReason.SHALLOW_CLONE: "Repository is a shallow clone; fetch full history first",
    SkipReason.DIRTY_SUBMODULES: "Submodules have uncommitted or unsynced changes",
    SkipReason.REBASE_IN_PROGRESS: "A rebase is in progress; finish or abort it first",
    SkipReason.MERGE_IN_PROGRESS: "A merge is in progress; finish or abort it first",
    SkipReason.CHERRY_PICK_IN_PROGRESS: "A cherry-pick is in progress; finish or abort it first",
    SkipReason.DETACHED_HEAD: "HEAD is detached; check out a branch first",
    SkipReason.NO_UPSTREAM_BRANCH: "Current branch has no upstream; push strategy needs one",
    SkipReason.DIVERGED_FROM_UPSTREAM: "Branch has diverged from upstream (ahead and behind)",
    SkipReason.UNMERGED_PATHS: "Index has unmerged paths from a conflict",
    SkipReason.DIFF_CHECK_FAILED: "git diff --check reports whitespace errors or conflict markers",
    SkipReason.TOO_MANY_UNTRACKED_FILES: "Too many untracked files",
    SkipReason.GIT_ERROR: "Git failed while inspecting the repository",
}


def preflight_skip_reason_message(reason: SkipReason | str) -> str:
    """Operator-facing explanation for a skip reason code."""

    try:
        return _SKIP_REASON_MESSAGES[SkipReason(reason)]
    except ValueError:
        return f"Preflight check failed ({reason})"


def repo_preflight_check(
    path: Path,
    *,
    push_strategy: str = "push",
    max_untracked_files: int = 1_000,
) -> SkipReason | None:
    """Run the ordered checks; first failure wins, ``None`` means admitted."""

    if not is_git_repo(path):
        return SkipReason.NOT_A_GIT_REPO
    if not _config_value(path, "user.email"):
        return SkipReason.GIT_EMAIL_NOT_CONFIGURED
    if not _config_value(path, "user.name"):
        return SkipReason.GIT_NAME_NOT_CONFIGURED
    if git_output(path, "rev-parse", "--is-shallow-repository") == "true":
        return SkipReason.SHALLOW_CLONE
    if _has_dirty_submodules(path):
        return SkipReason.DIRTY_SUBMODULES

    repo_git_dir = git_dir(path)
    if (repo_git_dir / "rebase-apply").exists() or (repo_git_dir / "rebase-merge").exists():
        return SkipReason.REBASE_IN_PROGRESS
    if (repo_git_dir / "MERGE_HEAD").exists():
        return SkipReason.MERGE_IN_PROGRESS
    if (repo_git_dir / "CHERRY_PICK_HEAD").exists():
        return SkipReason.CHERRY_PICK_IN_PROGRESS
    if run_git(path, "symbolic-ref", "--quiet", "HEAD", check=False).returncode != 0:
        return SkipReason.DETACHED_HEAD

    has_upstream = (
        run_git(
            path,
            "rev-parse",
            "--abbrev-ref",
            "--symbolic-full-name",
            "@{u}",
            check=False,
        ).returncode
        == 0
    )
    if push_strategy != "none" and not has_upstream:
        return SkipReason.NO_UPSTREAM_BRANCH
    if has_upstream and _is_diverged(path):
        return SkipReason.DIVERGED_FROM_UPSTREAM

    if git_output(path, "diff", "--name-only", "--diff-filter=U"):
        return SkipReason.UNMERGED_PATHS
    if _diff_check_fails(path):
        return SkipReason.DIFF_CHECK_FAILED

    untracked = git_output(path, "ls-files", "--others", "--exclude-standard").splitlines()
    if len(untracked) > max_untracked_files:
        return SkipReason.TOO_MANY_UNTRACKED_FILES
    return None


class PreflightGate:
    """Evaluates repos in parallel and appends one audit record per decision."""

    def __init__(self, *, state_dir: Path, settings: PreflightSettings, run_id: str) -> None:
        self.settings = settings
        self.run_id = run_id
        self.results_path = state_dir / "agent-sweep" / "preflight_results.ndjson"
        self._append_lock = threading.Lock()

    def evaluate(self, target: RepoTarget) -> PreflightResult:
        try:
            reason = repo_preflight_check(
                target.local_path,
                push_strategy=self.settings.push_strategy,
                max_untracked_files=self.settings.max_untracked_files,
            )
        except GitCommandError as error:
            logger.warning("Preflight git failure for %s: %s", target.repo_id, error)
            reason = SkipReason.GIT_ERROR
        result = PreflightResult(
            repo_id=target.repo_id,
            path=str(target.local_path),
            passed=reason is None,
            skip_reason=reason.value if reason is not None else None,
            run_id=self.run_id,
            checked_at=utc_timestamp(),
        )
        with self._append_lock:
            append_ndjson(self.results_path, result.to_payload())
        if reason is not None:
            logger.info(
                "Preflight rejected %s: %s (%s)",
                target.repo_id,
                reason.value,
                preflight_skip_reason_message(reason),
            )
        return result

    def run(self, targets: list[RepoTarget]) -> list[PreflightResult]:
        """Evaluate every target; result order matches input order."""

        if not targets:
            return []
        workers = max(1, min(self.settings.workers, len(targets)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="preflight") as pool:
            return list(pool.map(self.evaluate, targets))


def _config_value(path: Path, key: str) -> str:
    completed = run_git(path, "config", "--get", key, check=False)
    return completed.stdout.strip() if completed.returncode == 0 else ""


def _has_dirty_submodules(path: Path) -> bool:
    if not (path / ".gitmodules").exists():
        return False
    status = git_output(path, "submodule", "status", "--recursive")
    for line in status.splitlines():
        if line[:1] in {"+", "U"}:
            return True
    dirty = git_output(
        path,
        "submodule",
        "foreach",
        "--quiet",
        "--recursive",
        "git status --porcelain",
    )
    return bool(dirty)


def _is_diverged(path: Path) -> bool:
    counts = git_output(path, "rev-list", "--left-right", "--count", "HEAD...@{u}").split()
    if len(counts) != 2:
        return False
    ahead, behind = (int(value) for value in counts)
    return ahead > 0 and behind > 0


def _diff_check_fails(path: Path) -> bool:
    for args in (("diff", "--check"), ("diff", "--cached", "--check")):
        if run_git(path, *args, check=False).returncode != 0:
            return True
    return False
