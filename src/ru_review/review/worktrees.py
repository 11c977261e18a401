"""Run-scoped git worktree allocation, lookup and cleanup."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from ru_review.review.contracts import (
    WorktreeEntry,
    load_state_document,
    read_worktree_entry,
    repo_slug,
    write_json,
)
from ru_review.review.errors import GitCommandError, StaleStateError, WorktreeError
from ru_review.review.gitcmd import (
    current_branch,
    git_output,
    git_succeeds,
    has_uncommitted_changes,
    is_git_repo,
    run_git,
)
from ru_review.review.repos import RepoTarget

logger = logging.getLogger(__name__)


def review_branch_name(run_id: str, repo_id: str) -> str:
    """Deterministic branch: ``ru/review/<run_id>/<repo slug>``."""

    return f"ru/review/{run_id}/{repo_slug(repo_id)}"


def ensure_clean_or_fail(repo_path: Path) -> None:
    """Refuse non-git directories and checkouts with uncommitted changes."""

    if not is_git_repo(repo_path):
        raise WorktreeError(f"Not a git repository: {repo_path}", kind="invalid_repo")
    if has_uncommitted_changes(repo_path):
        raise WorktreeError(f"Repository has uncommitted changes: {repo_path}", kind="dirty_repo")


class WorktreeOrchestrator:
    """Allocates one isolated worktree per admitted repo for a single run."""

    def __init__(self, *, state_dir: Path, run_id: str) -> None:
        self.run_id = run_id
        self.worktrees_root = state_dir / "worktrees"
        self.run_dir = self.worktrees_root / run_id
        self.mapping_path = self.run_dir / "mapping.json"

    def worktree_dir(self, repo_id: str) -> Path:
        return self.run_dir / repo_slug(repo_id)

    def prepare(self, targets: list[RepoTarget]) -> dict[str, WorktreeEntry]:
        """Create worktrees for ``targets`` and write the run mapping once.

        Repos that are not git checkouts are logged and skipped; entries
        already allocated for this run (a resumed run) are reused.
        """

        mapping = self.load_mapping()
        for target in targets:
            existing = mapping.get(target.repo_id)
            if existing is not None and Path(existing.worktree_path).is_dir():
                continue
            if not is_git_repo(target.local_path):
                logger.warning("Skipping worktree for %s: not a git repository", target.repo_id)
                continue
            try:
                mapping[target.repo_id] = self._allocate(target)
            except GitCommandError as error:
                logger.warning("Worktree allocation failed for %s: %s", target.repo_id, error)
        write_json(
            self.mapping_path,
            {repo_id: entry.to_payload() for repo_id, entry in mapping.items()},
        )
        return mapping

    def load_mapping(self) -> dict[str, WorktreeEntry]:
        if not self.mapping_path.exists():
            return {}
        payload = load_state_document(self.mapping_path)
        try:
            return {
                repo_id: read_worktree_entry(entry)
                for repo_id, entry in payload.items()
                if isinstance(entry, dict)
            }
        except TypeError as error:
            raise StaleStateError(
                f"Invalid worktree mapping {self.mapping_path}: {error}",
            ) from error

    def get_worktree_path(self, repo_id: str) -> Path:
        entry = self.load_mapping().get(repo_id)
        if entry is None:
            raise WorktreeError(f"No worktree mapped for {repo_id} in run {self.run_id}")
        return Path(entry.worktree_path)

    def worktree_exists(self, repo_id: str) -> bool:
        entry = self.load_mapping().get(repo_id)
        return entry is not None and Path(entry.worktree_path).is_dir()

    def cleanup(self, *, delete_branches: bool = True) -> None:
        """Remove this run's worktrees, branches and run directory; never raises on git errors."""

        try:
            mapping = self.load_mapping()
        except StaleStateError as error:
            logger.warning("Cleaning up without mapping: %s", error)
            mapping = {}
        for repo_id, entry in mapping.items():
            repo_path = Path(entry.repo_path)
            if not repo_path.is_dir():
                continue
            try:
                run_git(repo_path, "worktree", "remove", "--force", entry.worktree_path)
            except GitCommandError as error:
                logger.warning("Could not remove worktree for %s: %s", repo_id, error)
            if delete_branches:
                try:
                    run_git(repo_path, "branch", "-D", entry.branch)
                except GitCommandError as error:
                    logger.warning("Could not delete branch %s: %s", entry.branch, error)
            try:
                run_git(repo_path, "worktree", "prune")
            except GitCommandError as error:
                logger.warning("git worktree prune failed for %s: %s", repo_id, error)
        if self.run_dir.exists():
            try:
                shutil.rmtree(self.run_dir)
            except OSError as error:
                logger.warning("Could not remove %s: %s", self.run_dir, error)

    def _allocate(self, target: RepoTarget) -> WorktreeEntry:
        repo_path = target.local_path
        base_ref = target.ref or current_branch(repo_path) or "HEAD"
        base_commit = git_output(repo_path, "rev-parse", "--verify", f"{base_ref}^{{commit}}")
        branch = review_branch_name(self.run_id, target.repo_id)
        path = self.worktree_dir(target.repo_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        if git_succeeds(repo_path, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"):
            run_git(repo_path, "worktree", "add", str(path), branch)
        else:
            run_git(repo_path, "worktree", "add", "-b", branch, str(path), base_commit)
        logger.info("Allocated worktree %s on %s for %s", path, branch, target.repo_id)
        return WorktreeEntry(
            worktree_path=str(path),
            branch=branch,
            base_ref=base_ref,
            base_commit=base_commit,
            repo_path=str(repo_path),
        )
