"""Agent sweep: hand every dirty checkout to the driver after preflight."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from ru_review.config import Settings
from ru_review.review.contracts import PreflightResult, repo_slug
from ru_review.review.driver import CliReviewDriver, DriverRunRequest, ReviewDriver
from ru_review.review.errors import DriverRunError
from ru_review.review.exit_codes import (
    EXIT_SUCCESS,
    aggregate_exit_code,
    exit_code_for_kind,
)
from ru_review.review.gitcmd import has_uncommitted_changes, is_git_repo
from ru_review.review.governor import model_log_dir
from ru_review.review.locking import ReviewLock
from ru_review.review.orchestrator import new_run_id
from ru_review.review.preflight import PreflightGate, preflight_skip_reason_message
from ru_review.review.repos import RepoTarget, load_repo_targets

logger = logging.getLogger(__name__)

SWEEP_MODE = "agent-sweep"


@dataclass(slots=True)
class SweepRepoResult:
    repo_id: str
    path: str
    status: str
    reason: str | None = None
    exit_code: int = EXIT_SUCCESS

    def to_payload(self) -> dict[str, object]:
        return {
            "repo": self.repo_id,
            "path": self.path,
            "status": self.status,
            "reason": self.reason,
            "exit_code": self.exit_code,
        }


@dataclass(slots=True)
class SweepSummary:
    """Agent-sweep report; ``mode`` is ``dry-run`` or ``agent-sweep``."""

    run_id: str
    mode: str
    repos: list[SweepRepoResult] = field(default_factory=list)
    preflight: list[PreflightResult] = field(default_factory=list)
    exit_code: int = EXIT_SUCCESS

    def to_payload(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "repos": [repo.to_payload() for repo in self.repos],
            "exit_code": self.exit_code,
        }


def build_sweep_prompt(repo_id: str) -> str:
    return (
        f"The checkout of {repo_id} has uncommitted changes.\n"
        "Inspect them, group related changes into logical commits with clear messages, "
        "and commit them. Do not push. Do not discard work you do not understand.\n"
    )


class AgentSweep:
    """Preflights dirty repos and dispatches the driver in each admitted checkout."""

    def __init__(self, *, settings: Settings, driver: ReviewDriver | None = None) -> None:
        self.settings = settings
        self.state_dir = settings.paths.state_dir
        self.sweep_dir = self.state_dir / "agent-sweep"
        self.driver = driver or CliReviewDriver()

    def dirty_targets(self) -> list[RepoTarget]:
        paths = self.settings.paths
        targets = load_repo_targets(paths.config_dir, paths.projects_dir)
        dirty: list[RepoTarget] = []
        for target in targets:
            if not is_git_repo(target.local_path):
                logger.info("Skipping %s: not a git checkout", target.repo_id)
                continue
            if has_uncommitted_changes(target.local_path):
                dirty.append(target)
        return dirty

    def run(self, *, dry_run: bool = False) -> SweepSummary:
        run_id = new_run_id()
        dirty = self.dirty_targets()
        if dry_run:
            return SweepSummary(
                run_id=run_id,
                mode="dry-run",
                repos=[
                    SweepRepoResult(
                        repo_id=target.repo_id,
                        path=str(target.local_path),
                        status="dirty",
                    )
                    for target in dirty
                ],
            )

        lock = ReviewLock(self.state_dir)
        with lock.hold(run_id=run_id, mode=SWEEP_MODE):
            summary = SweepSummary(run_id=run_id, mode=SWEEP_MODE)
            gate = PreflightGate(
                state_dir=self.state_dir,
                settings=self.settings.preflight,
                run_id=run_id,
            )
            summary.preflight = gate.run(dirty)
            admitted: list[RepoTarget] = []
            for target, result in zip(dirty, summary.preflight, strict=True):
                if result.passed:
                    admitted.append(target)
                    continue
                summary.repos.append(
                    SweepRepoResult(
                        repo_id=target.repo_id,
                        path=str(target.local_path),
                        status="rejected",
                        reason=result.skip_reason,
                        exit_code=exit_code_for_kind("preflight_rejected"),
                    ),
                )

            if admitted:
                workers = max(1, min(len(admitted), self.settings.governor.target_parallelism))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sweep") as pool:
                    summary.repos.extend(
                        pool.map(lambda target: self._sweep_one(run_id, target), admitted),
                    )
            summary.exit_code = aggregate_exit_code(*(repo.exit_code for repo in summary.repos))
        return summary

    def _sweep_one(self, run_id: str, target: RepoTarget) -> SweepRepoResult:
        slug = repo_slug(target.repo_id)
        request = DriverRunRequest(
            repo_id=target.repo_id,
            worktree_path=target.local_path,
            plan_path=self.sweep_dir / "plans" / run_id / f"{slug}.json",
            prompt=build_sweep_prompt(target.repo_id),
            prompt_path=self.sweep_dir / "prompts" / run_id / f"{slug}.txt",
            log_path=model_log_dir(self.state_dir) / f"{slug}.log",
            timeout_seconds=self.settings.driver.timeout_seconds,
            command_template=self.settings.driver.command_template,
            mode=SWEEP_MODE,
            run_id=run_id,
            graceful_shutdown_seconds=self.settings.driver.graceful_shutdown_seconds,
        )
        try:
            result = self.driver.run(request)
        except DriverRunError as error:
            logger.warning("Sweep driver failed for %s: %s", target.repo_id, error)
            return SweepRepoResult(
                repo_id=target.repo_id,
                path=str(target.local_path),
                status="failed",
                reason=error.error_kind,
                exit_code=exit_code_for_kind(error.error_kind),
            )
        if result.timed_out or result.exit_code != 0:
            kind = "session_timeout" if result.timed_out else "session_failed"
            return SweepRepoResult(
                repo_id=target.repo_id,
                path=str(target.local_path),
                status="failed",
                reason=kind,
                exit_code=exit_code_for_kind(kind),
            )
        return SweepRepoResult(
            repo_id=target.repo_id,
            path=str(target.local_path),
            status="swept",
        )


def render_sweep_lines(summary: SweepSummary) -> list[str]:
    if summary.mode == "dry-run":
        if not summary.repos:
            return ["No repositories with uncommitted changes"]
        lines = [f"Dirty repositories ({len(summary.repos)}):"]
        lines.extend(f"  {repo.repo_id}  {repo.path}" for repo in summary.repos)
        return lines
    if not summary.repos:
        return ["No repositories with uncommitted changes"]
    lines = [f"Agent sweep {summary.run_id}:"]
    for repo in summary.repos:
        detail = ""
        if repo.status == "rejected" and repo.reason:
            detail = f" ({repo.reason}: {preflight_skip_reason_message(repo.reason)})"
        elif repo.reason:
            detail = f" ({repo.reason})"
        lines.append(f"  {repo.repo_id}: {repo.status}{detail}")
    return lines
