"""Controllers for review CLI commands."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ru_review.config import Settings
from ru_review.review.checkpoint import CheckpointManager
from ru_review.review.errors import InvalidArgumentsError, ReviewError
from ru_review.review.exit_codes import (
    EXIT_SUCCESS,
    exit_code_for_kind,
    finalize_review_exit,
)
from ru_review.review.governor import (
    GithubRateLimitClient,
    RateGovernor,
    run_governor_until_lock_released,
)
from ru_review.review.locking import ReviewLock
from ru_review.review.metrics import MetricsRecorder, current_period, render_metrics_lines
from ru_review.review.orchestrator import ReviewOrchestrator, ReviewRunOptions, ReviewRunSummary
from ru_review.review.plan import (
    summarize_review_plan,
    summarize_review_plan_json,
    validate_review_plan,
)
from ru_review.review.preflight import preflight_skip_reason_message
from ru_review.review.sweep import AgentSweep, render_sweep_lines

logger = logging.getLogger(__name__)

_PERIOD_RE = re.compile(r"\d{4}-\d{2}")


@dataclass(slots=True)
class ReviewCommand:
    """CLI input for ``review``."""

    mode: str | None = None
    parallel: int | None = None
    max_repos: int | None = None
    resume: bool = False
    restart: bool = False
    force_resume: bool = False
    dry_run: bool = False
    status: bool = False
    output_json: bool = False


@dataclass(slots=True)
class AgentSweepCommand:
    """CLI input for ``agent-sweep``."""

    dry_run: bool = False
    output_json: bool = False


@dataclass(slots=True)
class GovernorStatusCommand:
    """CLI input for ``governor-status``."""

    output_json: bool = False


@dataclass(slots=True)
class PlanValidateCommand:
    """CLI input for ``plan validate``."""

    path: Path


@dataclass(slots=True)
class PlanSummaryCommand:
    """CLI input for ``plan summary``."""

    path: Path
    output_json: bool = False


@dataclass(slots=True)
class MetricsCommand:
    """CLI input for ``metrics``."""

    period: str | None = None
    output_json: bool = False


@dataclass(slots=True)
class ControllerResult:
    """Lines to print plus the process exit code.

    ``summary`` is the fixed exit line for non-zero codes; the CLI raises it
    so it lands on stderr exactly once.
    """

    lines: list[str] = field(default_factory=list)
    exit_code: int = EXIT_SUCCESS
    summary: str | None = None


class ReviewCliController:
    """Coordinates review, sweep, governor, plan and metrics CLI operations."""

    def review(self, command: ReviewCommand) -> ControllerResult:
        try:
            settings = _settings()
        except InvalidArgumentsError as error:
            return _error_result("review", error, output_json=command.output_json)

        if command.status:
            return self._review_status(settings, output_json=command.output_json)

        orchestrator = ReviewOrchestrator(settings=settings)
        try:
            summary = orchestrator.run(
                ReviewRunOptions(
                    mode=command.mode,
                    parallel=command.parallel,
                    max_repos=command.max_repos,
                    resume=command.resume,
                    restart=command.restart,
                    force_resume=command.force_resume,
                    dry_run=command.dry_run,
                ),
            )
        except ReviewError as error:
            return _error_result("review", error, output_json=command.output_json)

        exit_summary = finalize_review_exit(summary.exit_code)
        if command.output_json:
            payload: dict[str, Any] = {"command": "review", **summary.to_payload()}
            payload["exit"] = exit_summary.to_payload()
            return _finish([_dump(payload)], summary.exit_code)
        return _finish(_render_review_lines(summary), summary.exit_code)

    def agent_sweep(self, command: AgentSweepCommand) -> ControllerResult:
        try:
            settings = _settings()
            sweep = AgentSweep(settings=settings).run(dry_run=command.dry_run)
        except ReviewError as error:
            return _error_result("agent-sweep", error, output_json=command.output_json)

        if command.output_json:
            payload = {"command": "agent-sweep", **sweep.to_payload()}
            payload["exit"] = finalize_review_exit(sweep.exit_code).to_payload()
            return _finish([_dump(payload)], sweep.exit_code, fixed_line=False)
        return _finish(render_sweep_lines(sweep), sweep.exit_code, fixed_line=False)

    def governor_status(self, command: GovernorStatusCommand) -> ControllerResult:
        try:
            settings = _settings()
        except InvalidArgumentsError as error:
            return _error_result("governor-status", error, output_json=command.output_json)

        client = _rate_limit_client(settings)
        try:
            governor = RateGovernor(
                settings=settings.governor,
                state_dir=settings.paths.state_dir,
                rate_limit_client=client,
            )
            state = governor.tick()
        finally:
            if client is not None:
                client.close()

        lock_status = ReviewLock(settings.paths.state_dir).status()
        if command.output_json:
            payload = {"command": "governor-status", "governor": state.to_payload()}
            payload["lock"] = lock_status
            return ControllerResult(lines=[_dump(payload)])
        return ControllerResult(
            lines=[
                f"Effective parallelism: {state.effective_parallelism}"
                f" (target {state.target_parallelism})",
                f"Circuit breaker: {'open' if state.circuit_breaker_open else 'closed'}"
                f" (errors in window: {state.error_count_window})",
                f"GitHub remaining: {state.github_remaining} (reset {state.github_reset})",
                f"Model backoff: {'yes' if state.model_in_backoff else 'no'}",
                f"Review lock held: {'yes' if lock_status.get('held') else 'no'}",
            ],
        )

    def governor_run(self) -> ControllerResult:
        """Tick the governor in the foreground until the review lock is released."""

        try:
            settings = _settings()
        except InvalidArgumentsError as error:
            return _error_result("governor-run", error, output_json=False)

        marker = ReviewLock(settings.paths.state_dir).marker_path
        if not marker.exists():
            return ControllerResult(lines=["Review lock not held; governor not started"])
        client = _rate_limit_client(settings)
        try:
            governor = RateGovernor(
                settings=settings.governor,
                state_dir=settings.paths.state_dir,
                rate_limit_client=client,
            )
            run_governor_until_lock_released(governor, marker)
        finally:
            if client is not None:
                client.close()
        state = governor.snapshot()
        return ControllerResult(
            lines=[
                "Review lock released; governor stopped "
                f"(effective parallelism {state.effective_parallelism})",
            ],
        )

    def plan_validate(self, command: PlanValidateCommand) -> ControllerResult:
        message = validate_review_plan(command.path)
        if message == "Valid":
            return ControllerResult(lines=[f"{command.path}: Valid"])
        return ControllerResult(
            lines=[f"{command.path}: {message}"],
            exit_code=exit_code_for_kind("invalid_plan"),
            summary="Plan validation failed",
        )

    def plan_summary(self, command: PlanSummaryCommand) -> ControllerResult:
        if command.output_json:
            payload = summarize_review_plan_json(command.path)
            exit_code = exit_code_for_kind("invalid_plan") if "error" in payload else EXIT_SUCCESS
            return ControllerResult(
                lines=[_dump(payload)],
                exit_code=exit_code,
                summary="Plan validation failed" if exit_code else None,
            )
        lines = summarize_review_plan(command.path)
        if lines and lines[0].startswith("Cannot summarize"):
            return ControllerResult(
                lines=lines,
                exit_code=exit_code_for_kind("invalid_plan"),
                summary="Plan validation failed",
            )
        return ControllerResult(lines=lines)

    def metrics(self, command: MetricsCommand) -> ControllerResult:
        try:
            settings = _settings()
        except InvalidArgumentsError as error:
            return _error_result("metrics", error, output_json=command.output_json)
        period = command.period or current_period()
        if not _PERIOD_RE.fullmatch(period):
            return _error_result(
                "metrics",
                InvalidArgumentsError(f"--period must look like YYYY-MM: {period!r}"),
                output_json=command.output_json,
            )
        recorder = MetricsRecorder(settings.paths.state_dir)
        try:
            snapshot = recorder.snapshot(period)
        except ReviewError as error:
            return _error_result("metrics", error, output_json=command.output_json)
        if command.output_json:
            payload = recorder.load_period(period) if snapshot is not None else None
            return ControllerResult(
                lines=[_dump(payload or {"period": period, "error": "no metrics recorded"})],
            )
        return ControllerResult(lines=render_metrics_lines(snapshot, period=period))

    def _review_status(self, settings: Settings, *, output_json: bool) -> ControllerResult:
        lock_status = ReviewLock(settings.paths.state_dir).status()
        checkpoint_status = CheckpointManager(settings.paths.state_dir).status()
        if output_json:
            payload = {
                "command": "review",
                "mode": "status",
                "lock": lock_status,
                "checkpoint": checkpoint_status,
            }
            return ControllerResult(lines=[_dump(payload)])

        lines = []
        if lock_status.get("held"):
            lines.append(
                f"Review lock: held by pid={lock_status.get('pid')} "
                f"run_id={lock_status.get('run_id')} mode={lock_status.get('mode')} "
                f"since {lock_status.get('started_at')}",
            )
        else:
            lines.append("Review lock: free")
        if checkpoint_status.get("exists"):
            if "error" in checkpoint_status:
                lines.append(f"Checkpoint: unreadable ({checkpoint_status['error']})")
            else:
                lines.append(
                    f"Checkpoint: run_id={checkpoint_status.get('run_id')} "
                    f"phase={checkpoint_status.get('phase')} "
                    f"completed={checkpoint_status.get('repos_completed')} "
                    f"pending={checkpoint_status.get('repos_pending')}",
                )
        else:
            lines.append("Checkpoint: none")
        return ControllerResult(lines=lines)


def _settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as error:
        raise InvalidArgumentsError(str(error)) from error


def _rate_limit_client(settings: Settings) -> GithubRateLimitClient | None:
    if not settings.governor.github_token:
        return None
    return GithubRateLimitClient(
        api_url=settings.governor.github_api_url,
        token=settings.governor.github_token,
        timeout_seconds=settings.governor.request_timeout_seconds,
    )


def _render_review_lines(summary: ReviewRunSummary) -> list[str]:
    header = "Dry run" if summary.dry_run else "Review run"
    lines = [
        f"{header} {summary.run_id} (mode={summary.mode}"
        f"{', resumed' if summary.resumed else ''})",
    ]
    for result in summary.preflight:
        if not result.passed and result.skip_reason:
            lines.append(
                f"  {result.repo_id}: skipped by preflight ({result.skip_reason}: "
                f"{preflight_skip_reason_message(result.skip_reason)})",
            )
    if summary.dry_run:
        lines.append(f"Admitted repos: {len(summary.admitted)}")
        lines.extend(f"  {repo_id}" for repo_id in summary.admitted)
        return lines
    for outcome in summary.outcomes:
        if outcome.status == "rejected":
            continue
        detail = f" ({outcome.error_kind}: {outcome.message})" if outcome.error_kind else ""
        if outcome.status == "completed":
            detail = f" items={outcome.items_processed} fixed={outcome.items_fixed}"
            if outcome.questions:
                detail += f" questions={outcome.questions}"
            if outcome.pushed_commit:
                detail += f" pushed={outcome.pushed_commit[:12]}"
        elif outcome.status == "skipped":
            detail = f" ({outcome.message})"
        lines.append(f"  {outcome.repo_id}: {outcome.status}{detail}")
    if summary.interrupted:
        lines.append("Run interrupted; continue with --resume")
    return lines


def _finish(lines: list[str], exit_code: int, *, fixed_line: bool = True) -> ControllerResult:
    exit_summary = finalize_review_exit(exit_code)
    if exit_code == EXIT_SUCCESS:
        if fixed_line:
            lines = [*lines, exit_summary.message]
        return ControllerResult(lines=lines)
    return ControllerResult(lines=lines, exit_code=exit_code, summary=exit_summary.message)


def _error_result(command: str, error: ReviewError, *, output_json: bool) -> ControllerResult:
    kind = error.error_kind
    exit_code = exit_code_for_kind(kind)
    logger.error("%s failed (%s): %s", command, kind, error)
    exit_summary = finalize_review_exit(exit_code)
    if output_json:
        payload = {
            "command": command,
            "error": {"kind": kind, "message": str(error)},
            "exit": exit_summary.to_payload(),
        }
        return ControllerResult(
            lines=[_dump(payload)],
            exit_code=exit_code,
            summary=exit_summary.message,
        )
    return ControllerResult(
        lines=[str(error)],
        exit_code=exit_code,
        summary=exit_summary.message,
    )


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)
