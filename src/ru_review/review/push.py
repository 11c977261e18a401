"""Push safety checks and fast-forward-only merge back to the main checkout."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ru_review.review.contracts import repo_slug, write_json
from ru_review.review.errors import GitCommandError, PushUnsafeError
from ru_review.review.gitcmd import (
    current_branch,
    git_output,
    git_succeeds,
    main_repo_path,
    run_git,
)
from ru_review.review.plan import ReviewPlan, plan_path_for, read_review_plan
from ru_review.review.state import StateStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PushResult:
    """Outcome of a successful push."""

    repo_id: str
    base_ref: str
    branch: str
    pushed_commit: str
    archive_path: Path
    pushed_at: str


class PushCoordinator:
    """Validates plan safety, then merges ff-only and pushes the base branch."""

    def __init__(
        self,
        *,
        state_store: StateStore,
        run_id: str,
        allow_failing_gates: bool = False,
        remote: str = "origin",
    ) -> None:
        self.state_store = state_store
        self.run_id = run_id
        self.allow_failing_gates = allow_failing_gates
        self.remote = remote
        self.archive_dir = state_store.review_dir / "applied-plans" / run_id

    def verify_push_safe(
        self,
        repo_id: str,
        plan_path: Path,
        worktree: Path | None = None,
    ) -> ReviewPlan:
        """Return the validated plan or raise ``PushUnsafeError`` naming the first problem."""

        plan = read_review_plan(plan_path)
        if plan.repo != repo_id:
            raise PushUnsafeError(f"Plan is for {plan.repo}, not {repo_id}")

        unanswered = plan.unanswered_questions()
        if unanswered:
            ids = ", ".join(question.id for question in unanswered)
            raise PushUnsafeError(f"{len(unanswered)} plan questions are unanswered: {ids}")

        if not self.allow_failing_gates:
            if plan.git.quality_gates_ok is False:
                raise PushUnsafeError("Quality gates failed for this plan")
            if plan.git.tests.ran and plan.git.tests.ok is False:
                raise PushUnsafeError("Tests failed for this plan")
        elif plan.git.quality_gates_ok is False or plan.git.tests.ok is False:
            logger.warning("Pushing %s with failing quality gates (override enabled)", repo_id)
        if plan.git.quality_gates_warning:
            logger.warning("Quality gates reported warnings for %s", repo_id)

        if worktree is not None:
            actual_branch = current_branch(worktree)
            if plan.git.branch and plan.git.branch != actual_branch:
                raise PushUnsafeError(
                    f"Plan branch {plan.git.branch!r} does not match worktree branch "
                    f"{actual_branch!r}",
                )
            if plan.git.base_ref and not git_succeeds(
                worktree,
                "rev-parse",
                "--verify",
                "--quiet",
                f"refs/heads/{plan.git.base_ref}",
            ):
                raise PushUnsafeError(f"Plan base {plan.git.base_ref!r} does not exist locally")
        return plan

    def push_worktree_changes(
        self,
        repo_id: str,
        worktree: Path,
        *,
        base_commit: str | None = None,
    ) -> PushResult:
        """Fast-forward the main checkout's base branch to the worktree branch and push it.

        Any failure before the push leaves the remote untouched. A rejected
        push rolls the local base branch back to where it was.
        """

        plan = self.verify_push_safe(repo_id, plan_path_for(worktree), worktree)
        branch = current_branch(worktree)
        if branch is None:
            raise PushUnsafeError(f"Worktree {worktree} has a detached HEAD")
        main_repo = main_repo_path(worktree)
        base_ref = plan.git.base_ref or current_branch(main_repo)
        if base_ref is None:
            raise PushUnsafeError(f"Main checkout {main_repo} has a detached HEAD")
        if current_branch(main_repo) != base_ref:
            raise PushUnsafeError(f"Main checkout {main_repo} is not on {base_ref}")
        if git_output(main_repo, "status", "--porcelain", "--untracked-files=no"):
            raise PushUnsafeError(f"Main checkout {main_repo} has uncommitted changes")

        previous_tip = git_output(main_repo, "rev-parse", base_ref)
        if base_commit and not git_succeeds(
            main_repo,
            "merge-base",
            "--is-ancestor",
            base_commit,
            previous_tip,
        ):
            raise PushUnsafeError(
                f"Recorded base {base_commit[:12]} is not an ancestor of {base_ref} "
                f"({previous_tip[:12]})",
                kind="merge_conflict",
            )

        merge = run_git(main_repo, "merge", "--ff-only", "--quiet", branch, check=False)
        if merge.returncode != 0:
            raise PushUnsafeError(
                f"Cannot fast-forward {base_ref} to {branch}: {merge.stderr.strip()}",
                kind="merge_conflict",
            )

        pushed = run_git(main_repo, "push", "--quiet", self.remote, base_ref, check=False)
        if pushed.returncode != 0:
            run_git(main_repo, "reset", "--quiet", "--keep", previous_tip, check=False)
            raise GitCommandError(
                f"Push of {base_ref} to {self.remote} rejected: {pushed.stderr.strip()}",
                kind="push_rejected",
            )

        pushed_commit = git_output(main_repo, "rev-parse", base_ref)
        archive_path = self._archive_plan(repo_id, plan)
        pushed_at = self.state_store.record_push(repo_id, branch=base_ref)
        logger.info("Pushed %s %s -> %s/%s", repo_id, pushed_commit[:12], self.remote, base_ref)
        return PushResult(
            repo_id=repo_id,
            base_ref=base_ref,
            branch=branch,
            pushed_commit=pushed_commit,
            archive_path=archive_path,
            pushed_at=pushed_at,
        )

    def _archive_plan(self, repo_id: str, plan: ReviewPlan) -> Path:
        path = self.archive_dir / f"{repo_slug(repo_id)}.json"
        if path.exists():
            logger.warning("Applied plan already archived at %s; keeping original", path)
            return path
        write_json(path, plan.raw)
        return path
