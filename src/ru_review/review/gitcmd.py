"""Thin subprocess wrapper around the ``git`` binary."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from ru_review.review.errors import GitCommandError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 120


def run_git(
    repo: Path,
    *args: str,
    check: bool = True,
    timeout_seconds: float = GIT_TIMEOUT_SECONDS,
) -> subprocess.CompletedProcess[str]:
    """Run ``git -C repo args...`` capturing text output."""

    command = ["git", "-C", str(repo), *args]
    logger.debug("Running git %s in %s", " ".join(args), repo)
    try:
        completed = subprocess.run(  # noqa: S603
            command,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as error:
        raise GitCommandError("git executable not found", kind="missing_dependency") from error
    except subprocess.TimeoutExpired as error:
        raise GitCommandError(
            f"git {' '.join(args)} timed out after {timeout_seconds}s in {repo}",
        ) from error
    if check and completed.returncode != 0:
        stderr = completed.stderr.strip()
        raise GitCommandError(f"git {' '.join(args)} failed in {repo}: {stderr}")
    return completed


def git_output(repo: Path, *args: str) -> str:
    return run_git(repo, *args).stdout.strip()


def git_succeeds(repo: Path, *args: str) -> bool:
    return run_git(repo, *args, check=False).returncode == 0


def is_git_repo(path: Path) -> bool:
    if not path.is_dir():
        return False
    completed = run_git(path, "rev-parse", "--is-inside-work-tree", check=False)
    return completed.returncode == 0 and completed.stdout.strip() == "true"


def git_dir(repo: Path) -> Path:
    """Absolute path of the repo's (per-worktree) git directory."""

    raw = Path(git_output(repo, "rev-parse", "--git-dir"))
    return raw if raw.is_absolute() else (repo / raw).resolve()


def main_repo_path(worktree: Path) -> Path:
    """Main checkout that owns ``worktree``."""

    raw = Path(git_output(worktree, "rev-parse", "--git-common-dir"))
    common_dir = raw if raw.is_absolute() else (worktree / raw).resolve()
    return common_dir.parent if common_dir.name == ".git" else common_dir


def current_branch(repo: Path) -> str | None:
    completed = run_git(repo, "symbolic-ref", "--quiet", "--short", "HEAD", check=False)
    if completed.returncode != 0:
        return None
    return completed.stdout.strip() or None


def has_uncommitted_changes(repo: Path) -> bool:
    return bool(git_output(repo, "status", "--porcelain"))
