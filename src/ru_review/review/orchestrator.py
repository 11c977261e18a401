"""Review run orchestration: lock, governor, preflight, worktrees, dispatch, push."""

from __future__ import annotations

import logging
import shutil
import signal
import time
import uuid
from collections import deque
from collections.abc import Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from ru_review.config import REVIEW_MODES, Settings
from ru_review.review.checkpoint import CheckpointManager, ResumeDecision
from ru_review.review.contracts import (
    Checkpoint,
    PreflightResult,
    WorktreeEntry,
    repo_slug,
    utc_timestamp,
)
from ru_review.review.driver import (
    CliReviewDriver,
    DriverRunRequest,
    ReviewDriver,
    build_review_prompt,
)
from ru_review.review.errors import (
    DriverRunError,
    InvalidArgumentsError,
    PlanValidationError,
    ReviewError,
)
from ru_review.review.exit_codes import (
    EXIT_INTERRUPTED,
    EXIT_SUCCESS,
    aggregate_exit_code,
    exit_code_for_kind,
)
from ru_review.review.governor import GithubRateLimitClient, RateGovernor, model_log_dir
from ru_review.review.locking import ReviewLock
from ru_review.review.metrics import MetricsRecorder
from ru_review.review.plan import ReviewPlan, plan_path_for, read_review_plan
from ru_review.review.preflight import PreflightGate
from ru_review.review.push import PushCoordinator
from ru_review.review.repos import RepoTarget, config_hash, load_repo_targets
from ru_review.review.state import StateStore
from ru_review.review.worktrees import WorktreeOrchestrator

logger = logging.getLogger(__name__)

DISPATCH_POLL_SECONDS = 0.5


@dataclass(slots=True)
class ReviewRunOptions:
    """Run-level inputs; ``None`` falls back to settings."""

    mode: str | None = None
    parallel: int | None = None
    max_repos: int | None = None
    resume: bool = False
    restart: bool = False
    force_resume: bool = False
    dry_run: bool = False
    run_id: str | None = None


@dataclass(slots=True)
class RepoOutcome:
    """Result of one repo within a run."""

    repo_id: str
    status: str
    exit_code: int = EXIT_SUCCESS
    error_kind: str | None = None
    message: str = ""
    items_processed: int = 0
    items_fixed: int = 0
    questions: int = 0
    duration_seconds: int = 0
    pushed_commit: str | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "repo": self.repo_id,
            "status": self.status,
            "exit_code": self.exit_code,
            "error_kind": self.error_kind,
            "message": self.message,
            "items_processed": self.items_processed,
            "items_fixed": self.items_fixed,
            "questions": self.questions,
            "duration_seconds": self.duration_seconds,
            "pushed_commit": self.pushed_commit,
        }


@dataclass(slots=True)
class ReviewRunSummary:
    """Aggregated run report."""

    run_id: str
    mode: str
    resumed: bool = False
    dry_run: bool = False
    interrupted: bool = False
    admitted: list[str] = field(default_factory=list)
    preflight: list[PreflightResult] = field(default_factory=list)
    outcomes: list[RepoOutcome] = field(default_factory=list)
    exit_code: int = EXIT_SUCCESS

    def to_payload(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "resumed": self.resumed,
            "dry_run": self.dry_run,
            "interrupted": self.interrupted,
            "admitted": list(self.admitted),
            "preflight": [result.to_payload() for result in self.preflight],
            "repos": [outcome.to_payload() for outcome in self.outcomes],
            "exit_code": self.exit_code,
        }


@dataclass(slots=True)
class _RunContext:
    run_id: str
    mode: str
    config_hash: str
    repos_total: int
    completed: list[str]
    pending: list[str]
    started_at: str
    started_monotonic: float


def new_run_id() -> str:
    return f"{datetime.now(tz=UTC):%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"


class ReviewOrchestrator:
    """Runs one review across every configured repository."""

    def __init__(
        self,
        *,
        settings: Settings,
        driver: ReviewDriver | None = None,
        rate_limit_client: GithubRateLimitClient | None = None,
    ) -> None:
        self.settings = settings
        self.state_dir = settings.paths.state_dir
        self.driver = driver or CliReviewDriver()
        self.rate_limit_client = rate_limit_client
        self.lock = ReviewLock(self.state_dir)
        self.state_store = StateStore(
            self.state_dir,
            lock_timeout_seconds=settings.review.state_lock_timeout_seconds,
        )
        self.checkpoints = CheckpointManager(self.state_dir)
        self.metrics = MetricsRecorder(
            self.state_dir,
            lock_timeout_seconds=settings.review.state_lock_timeout_seconds,
        )
        self.governor: RateGovernor | None = None
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Stop dispatching; in-flight sessions get the graceful-shutdown window."""

        if not self._stop_requested:
            logger.warning("Stop requested (%s); draining in-flight sessions", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def run(self, options: ReviewRunOptions) -> ReviewRunSummary:
        mode, parallel, max_repos = self._validate(options)
        paths = self.settings.paths
        targets = load_repo_targets(paths.config_dir, paths.projects_dir)
        if max_repos:
            targets = targets[:max_repos]
        run_id = options.run_id or new_run_id()

        self.lock.acquire(run_id=run_id, mode=mode)
        client_owned = False
        try:
            with self._signal_handlers():
                self.state_store.init()
                self._best_effort_metrics(self.metrics.init_period)
                if options.dry_run:
                    decision = ResumeDecision(run_id=run_id, pending=[t.repo_id for t in targets])
                else:
                    decision = self._resolve_checkpoint(options, targets, run_id)

                if self.rate_limit_client is None and self.settings.governor.github_token:
                    self.rate_limit_client = GithubRateLimitClient(
                        api_url=self.settings.governor.github_api_url,
                        token=self.settings.governor.github_token,
                        timeout_seconds=self.settings.governor.request_timeout_seconds,
                    )
                    client_owned = True
                self.governor = RateGovernor(
                    settings=self.settings.governor,
                    state_dir=self.state_dir,
                    rate_limit_client=self.rate_limit_client,
                )
                self.governor.set_target_parallelism(parallel)
                self.governor.start(lock_marker=self.lock.marker_path)

                return self._run_locked(
                    options=options,
                    mode=mode,
                    targets=targets,
                    decision=decision,
                )
        finally:
            if self.governor is not None:
                self.governor.stop()
            if client_owned and self.rate_limit_client is not None:
                self.rate_limit_client.close()
            self.lock.release()

    def _validate(self, options: ReviewRunOptions) -> tuple[str, int, int]:
        mode = (options.mode or self.settings.review.mode).strip().lower()
        if mode not in REVIEW_MODES:
            raise InvalidArgumentsError(
                f"Invalid mode {mode!r}; expected one of {', '.join(REVIEW_MODES)}",
            )
        if options.resume and options.restart:
            raise InvalidArgumentsError("--resume and --restart are mutually exclusive")
        parallel = (
            options.parallel
            if options.parallel is not None
            else self.settings.governor.target_parallelism
        )
        if parallel <= 0:
            raise InvalidArgumentsError(f"--parallel must be a positive integer: {parallel}")
        max_repos = (
            options.max_repos if options.max_repos is not None else self.settings.review.max_repos
        )
        if max_repos < 0:
            raise InvalidArgumentsError(f"--max-repos must be >= 0: {max_repos}")
        try:
            self.settings.validate_for_review()
        except ValueError as error:
            raise InvalidArgumentsError(str(error)) from error
        return mode, parallel, max_repos

    def _resolve_checkpoint(
        self,
        options: ReviewRunOptions,
        targets: list[RepoTarget],
        run_id: str,
    ) -> ResumeDecision:
        repo_ids = [target.repo_id for target in targets]
        decision = self.checkpoints.resolve(
            repo_ids=repo_ids,
            config_hash=config_hash(targets),
            new_run_id=run_id,
            resume=options.resume,
            restart=options.restart,
            force_resume=options.force_resume,
        )
        if decision.discarded_run_id:
            self.state_store.clear_run_state(decision.discarded_run_id, repo_ids)
            WorktreeOrchestrator(
                state_dir=self.state_dir,
                run_id=decision.discarded_run_id,
            ).cleanup()
        if decision.resumed:
            logger.info(
                "Resuming run %s: %d pending, %d completed",
                decision.run_id,
                len(decision.pending),
                len(decision.completed),
            )
        return decision

    def _run_locked(  # noqa: C901
        self,
        *,
        options: ReviewRunOptions,
        mode: str,
        targets: list[RepoTarget],
        decision: ResumeDecision,
    ) -> ReviewRunSummary:
        summary = ReviewRunSummary(
            run_id=decision.run_id,
            mode=mode,
            resumed=decision.resumed,
            dry_run=options.dry_run,
        )
        by_id = {target.repo_id: target for target in targets}
        candidates = [by_id[repo_id] for repo_id in decision.pending if repo_id in by_id]

        recent_days = self.settings.review.recent_review_days
        if recent_days > 0 and not decision.resumed:
            fresh: list[RepoTarget] = []
            for target in candidates:
                if self.state_store.is_recently_reviewed(target.repo_id, recent_days):
                    summary.outcomes.append(
                        RepoOutcome(
                            repo_id=target.repo_id,
                            status="skipped",
                            message=f"reviewed within the last {recent_days} days",
                        ),
                    )
                else:
                    fresh.append(target)
            candidates = fresh

        gate = PreflightGate(
            state_dir=self.state_dir,
            settings=self.settings.preflight,
            run_id=decision.run_id,
        )
        summary.preflight = gate.run(candidates)
        admitted: list[RepoTarget] = []
        for target, result in zip(candidates, summary.preflight, strict=True):
            if result.passed:
                admitted.append(target)
                continue
            summary.outcomes.append(
                RepoOutcome(
                    repo_id=target.repo_id,
                    status="rejected",
                    error_kind="preflight_rejected",
                    message=result.skip_reason or "",
                ),
            )
        summary.admitted = [target.repo_id for target in admitted]
        if options.dry_run:
            return summary

        context = _RunContext(
            run_id=decision.run_id,
            mode=mode,
            config_hash=config_hash(targets),
            repos_total=len(targets),
            completed=list(decision.completed),
            pending=[target.repo_id for target in admitted],
            started_at=utc_timestamp(),
            started_monotonic=time.monotonic(),
        )
        self._save_checkpoint(context)

        worktrees = WorktreeOrchestrator(state_dir=self.state_dir, run_id=decision.run_id)
        mapping = worktrees.prepare(admitted)
        dispatchable: list[tuple[RepoTarget, WorktreeEntry]] = []
        for target in admitted:
            entry = mapping.get(target.repo_id)
            if entry is None:
                outcome = self._failure(
                    target.repo_id,
                    "worktree_failed",
                    "worktree allocation failed",
                )
                self._complete(context, summary, outcome)
            else:
                dispatchable.append((target, entry))

        self._dispatch(context, summary, dispatchable)

        summary.interrupted = self._stop_requested
        summary.exit_code = aggregate_exit_code(
            *(outcome.exit_code for outcome in summary.outcomes),
            EXIT_INTERRUPTED if summary.interrupted else EXIT_SUCCESS,
        )
        duration = int(time.monotonic() - context.started_monotonic)
        if summary.interrupted:
            logger.warning(
                "Run %s interrupted by %s; %d repos left pending",
                context.run_id,
                self._stop_signal_name or "stop request",
                len(context.pending),
            )
            self._save_checkpoint(context, phase="interrupted")
        else:
            processed = [o for o in summary.outcomes if o.status in {"completed", "failed"}]
            self.state_store.record_review_run(
                context.run_id,
                started_at=context.started_at,
                repos_processed=len(processed),
                items_processed=sum(o.items_processed for o in processed),
                questions=sum(o.questions for o in processed),
                mode=mode,
            )
            self.checkpoints.clear()
            if not self.settings.review.keep_worktrees:
                worktrees.cleanup()
        self._best_effort_metrics(
            self.metrics.record_run_metrics,
            run_id=context.run_id,
            mode=mode,
            repos_processed=len(summary.outcomes),
            duration_seconds=duration,
            exit_code=summary.exit_code,
        )
        return summary

    def _dispatch(
        self,
        context: _RunContext,
        summary: ReviewRunSummary,
        work: list[tuple[RepoTarget, WorktreeEntry]],
    ) -> None:
        """Submit sessions while the governor admits them; complete them as they finish."""

        if not work:
            return
        governor = self.governor
        queue = deque(work)
        running: dict[Future[RepoOutcome], str] = {}
        workers = max(1, min(len(work), self.settings.governor.target_parallelism))
        if governor is not None:
            workers = max(1, min(len(work), governor.snapshot().target_parallelism))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="review") as pool:
            while queue or running:
                while (
                    queue
                    and not self._stop_requested
                    and len(running) < workers
                    and (governor is None or governor.can_start_new_session(len(running)))
                ):
                    target, entry = queue.popleft()
                    future = pool.submit(self._process_repo, context, target, entry)
                    running[future] = target.repo_id
                if not running:
                    if self._stop_requested or not queue:
                        break
                    time.sleep(DISPATCH_POLL_SECONDS)
                    continue
                done, _ = wait(running, timeout=DISPATCH_POLL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    repo_id = running.pop(future)
                    try:
                        outcome = future.result()
                    except (ReviewError, OSError) as error:
                        logger.exception("Session for %s failed unexpectedly", repo_id)
                        outcome = self._failure(repo_id, _error_kind(error), str(error))
                    self._complete(context, summary, outcome)

    def _process_repo(
        self,
        context: _RunContext,
        target: RepoTarget,
        entry: WorktreeEntry,
    ) -> RepoOutcome:
        started = time.monotonic()
        repo_id = target.repo_id
        worktree = Path(entry.worktree_path)
        plan_path = plan_path_for(worktree)
        self.state_store.mark_repo_status(
            repo_id,
            "in_progress",
            session_id=f"{context.run_id}:{repo_slug(repo_id)}",
        )
        request = DriverRunRequest(
            repo_id=repo_id,
            worktree_path=worktree,
            plan_path=plan_path,
            prompt=build_review_prompt(
                repo_id=repo_id,
                mode=context.mode,
                branch=entry.branch,
                base_ref=entry.base_ref,
            ),
            log_path=model_log_dir(self.state_dir) / f"{repo_slug(repo_id)}.log",
            timeout_seconds=self.settings.driver.timeout_seconds,
            command_template=self.settings.driver.command_template,
            mode=context.mode,
            run_id=context.run_id,
            branch=entry.branch,
            base_ref=entry.base_ref,
            shutdown_requested=lambda: self._stop_requested,
            graceful_shutdown_seconds=self.settings.driver.graceful_shutdown_seconds,
        )
        try:
            result = self.driver.run(request)
        except DriverRunError as error:
            return self._failure(repo_id, error.error_kind, str(error), started)

        if result.timed_out and self._stop_requested:
            return RepoOutcome(
                repo_id=repo_id,
                status="interrupted",
                exit_code=EXIT_INTERRUPTED,
                error_kind="interrupted",
                message="session stopped by shutdown request",
                duration_seconds=int(time.monotonic() - started),
            )
        if result.timed_out:
            return self._failure(repo_id, "session_timeout", "driver session timed out", started)
        if result.exit_code != 0:
            return self._failure(
                repo_id,
                "session_failed",
                f"driver exited with code {result.exit_code} (log: {result.log_path})",
                started,
            )

        try:
            plan = read_review_plan(plan_path)
        except PlanValidationError as error:
            return self._failure(repo_id, error.error_kind, str(error), started)
        if plan.repo != repo_id:
            return self._failure(
                repo_id,
                "invalid_plan",
                f"plan names {plan.repo}, expected {repo_id}",
                started,
            )
        return self._apply_plan(context, target, entry, plan, started)

    def _apply_plan(
        self,
        context: _RunContext,
        target: RepoTarget,
        entry: WorktreeEntry,
        plan: ReviewPlan,
        started: float,
    ) -> RepoOutcome:
        repo_id = target.repo_id
        for item in plan.items:
            self.state_store.record_item_outcome(
                repo_id,
                item.type,
                item.number,
                item.decision,
                item.notes,
            )
        unanswered = plan.unanswered_questions()
        if unanswered:
            self.state_store.queue_questions(
                repo_id,
                [question.to_payload() for question in unanswered],
            )

        pushed_commit: str | None = None
        if context.mode == "apply" and self.settings.preflight.push_strategy == "push":
            coordinator = PushCoordinator(
                state_store=self.state_store,
                run_id=context.run_id,
                allow_failing_gates=self.settings.review.allow_failing_gates,
            )
            try:
                pushed = coordinator.push_worktree_changes(
                    repo_id,
                    Path(entry.worktree_path),
                    base_commit=entry.base_commit,
                )
            except ReviewError as error:
                return self._failure(repo_id, error.error_kind, str(error), started)
            pushed_commit = pushed.pushed_commit
        elif context.mode == "plan":
            self._keep_plan(context.run_id, repo_id, Path(entry.worktree_path))

        duration = int(time.monotonic() - started)
        items_fixed = sum(1 for item in plan.items if item.decision == "fix")
        self.state_store.record_repo_outcome(
            repo_id,
            "pushed" if pushed_commit else "reviewed",
            duration_seconds=duration,
            items_processed=len(plan.items),
            items_fixed=items_fixed,
        )
        self._best_effort_metrics(
            self.metrics.record_metrics_from_plan,
            plan,
            duration_seconds=duration,
        )
        logger.info("Reviewed %s: %d items, %d fixed", repo_id, len(plan.items), items_fixed)
        return RepoOutcome(
            repo_id=repo_id,
            status="completed",
            items_processed=len(plan.items),
            items_fixed=items_fixed,
            questions=len(unanswered),
            duration_seconds=duration,
            pushed_commit=pushed_commit,
        )

    def _keep_plan(self, run_id: str, repo_id: str, worktree: Path) -> None:
        """Copy a plan-mode plan out of the worktree before cleanup removes it."""

        target = self.state_store.review_dir / "plans" / run_id / f"{repo_slug(repo_id)}.json"
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(plan_path_for(worktree), target)

    def _failure(
        self,
        repo_id: str,
        kind: str,
        message: str,
        started: float | None = None,
    ) -> RepoOutcome:
        duration = int(time.monotonic() - started) if started is not None else 0
        logger.warning("Repo %s failed (%s): %s", repo_id, kind, message)
        if self.governor is not None:
            self.governor.record_error()
        self.state_store.record_repo_outcome(
            repo_id,
            kind,
            duration_seconds=duration,
            status="failed",
        )
        return RepoOutcome(
            repo_id=repo_id,
            status="failed",
            exit_code=exit_code_for_kind(kind),
            error_kind=kind,
            message=message,
            duration_seconds=duration,
        )

    def _complete(
        self,
        context: _RunContext,
        summary: ReviewRunSummary,
        outcome: RepoOutcome,
    ) -> None:
        summary.outcomes.append(outcome)
        if outcome.status == "interrupted":
            return
        if outcome.repo_id in context.pending:
            context.pending.remove(outcome.repo_id)
        if outcome.repo_id not in context.completed:
            context.completed.append(outcome.repo_id)
        self._save_checkpoint(context)

    def _save_checkpoint(self, context: _RunContext, *, phase: str = "dispatch") -> None:
        self.checkpoints.save(
            Checkpoint(
                run_id=context.run_id,
                mode=context.mode,
                config_hash=context.config_hash,
                completed_repos=list(context.completed),
                pending_repos=list(context.pending),
                phase=phase,
                repos_total=context.repos_total,
                questions_pending=len(self.state_store.pending_questions()),
            ),
        )

    def _best_effort_metrics(self, operation, *args, **kwargs) -> None:
        try:
            operation(*args, **kwargs)
        except (OSError, ReviewError) as error:
            logger.warning("Metrics update failed: %s", error)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Not in main thread; signal handlers not installed")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _error_kind(error: Exception) -> str:
    if isinstance(error, ReviewError):
        return error.error_kind
    return "session_failed"
