"""CLI entrypoint for ru-review."""

import json
import logging
import os
import sys
from pathlib import Path

import rich_click as click

from ru_review import __version__
from ru_review.review.controllers import (
    AgentSweepCommand,
    ControllerResult,
    GovernorStatusCommand,
    MetricsCommand,
    PlanSummaryCommand,
    PlanValidateCommand,
    ReviewCliController,
    ReviewCommand,
)
from ru_review.review.exit_codes import EXIT_INVALID, finalize_review_exit

click.rich_click.USE_MARKDOWN = True
REVIEW_CONTROLLER = ReviewCliController()
_ARGV_KEY = "ru_review.argv"


class ReviewExitError(click.ClickException):
    """Non-zero run outcome carrying its mapped exit code."""

    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class InvalidUsageError(click.UsageError):
    """Command-line usage error reported with the invalid-arguments exit code."""

    exit_code = EXIT_INVALID


class ReviewGroup(click.RichGroup):
    """Group that reports parse failures as invalid arguments, not click's default 2."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        ctx.meta[_ARGV_KEY] = list(args)
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as error:
            if isinstance(error, InvalidUsageError) or _shows_help(error):
                raise
            raise _invalid_usage(ctx, error) from error

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except click.UsageError as error:
            if isinstance(error, InvalidUsageError) or _shows_help(error):
                raise
            raise _invalid_usage(ctx, error) from error


@click.group(cls=ReviewGroup)
@click.version_option(version=__version__, prog_name="ru-review")
def ru_review() -> None:
    """Autonomous multi-repo review CLI.

    Logs go to stderr; set `RU_LOG_LEVEL` (default WARNING) to change verbosity.
    """

    logging.basicConfig(
        level=os.getenv("RU_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@ru_review.command("review")
@click.option(
    "--mode",
    default=None,
    help="Review mode: `plan` (no changes pushed) or `apply`. Defaults to REVIEW_MODE.",
)
@click.option(
    "--parallel",
    type=int,
    default=None,
    help="Target concurrent driver sessions. Defaults to REVIEW_PARALLEL.",
)
@click.option(
    "--max-repos",
    type=int,
    default=None,
    help="Review at most N repos from the configured list (0 = all).",
)
@click.option("--resume", is_flag=True, help="Continue the interrupted run from its checkpoint.")
@click.option("--restart", is_flag=True, help="Discard any checkpoint and start a new run.")
@click.option(
    "--force-resume",
    is_flag=True,
    help="Resume even though the repo list changed since the checkpoint.",
)
@click.option("--dry-run", is_flag=True, help="Run preflight only; do not dispatch the driver.")
@click.option("--status", is_flag=True, help="Show lock holder and checkpoint, then exit.")
@click.option("--json", "output_json", is_flag=True, help="Emit JSON on stdout.")
def review(  # noqa: PLR0913
    mode: str | None,
    parallel: int | None,
    max_repos: int | None,
    resume: bool,
    restart: bool,
    force_resume: bool,
    dry_run: bool,
    status: bool,
    output_json: bool,
) -> None:
    """Review every configured repository with the agent driver."""

    _emit(
        REVIEW_CONTROLLER.review(
            ReviewCommand(
                mode=mode,
                parallel=parallel,
                max_repos=max_repos,
                resume=resume or force_resume,
                restart=restart,
                force_resume=force_resume,
                dry_run=dry_run,
                status=status,
                output_json=output_json,
            ),
        ),
    )


@ru_review.command("agent-sweep")
@click.option("--dry-run", is_flag=True, help="List repos with uncommitted changes only.")
@click.option("--json", "output_json", is_flag=True, help="Emit JSON on stdout.")
def agent_sweep(dry_run: bool, output_json: bool) -> None:
    """Let the driver commit uncommitted work in every dirty repository."""

    _emit(
        REVIEW_CONTROLLER.agent_sweep(
            AgentSweepCommand(dry_run=dry_run, output_json=output_json),
        ),
    )


@ru_review.command("governor-status")
@click.option("--json", "output_json", is_flag=True, help="Emit JSON on stdout.")
def governor_status(output_json: bool) -> None:
    """Print a one-shot rate governor snapshot."""

    _emit(REVIEW_CONTROLLER.governor_status(GovernorStatusCommand(output_json=output_json)))


@ru_review.command("governor-run", hidden=True)
def governor_run() -> None:
    """Run the rate governor in the foreground until the review lock is released."""

    _emit(REVIEW_CONTROLLER.governor_run())


@ru_review.group()
def plan() -> None:
    """Review plan commands."""


@plan.command("validate")
@click.argument("path", type=click.Path(path_type=Path))
def plan_validate(path: Path) -> None:
    """Validate a review plan file."""

    _emit(REVIEW_CONTROLLER.plan_validate(PlanValidateCommand(path=path)))


@plan.command("summary")
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--json", "output_json", is_flag=True, help="Emit JSON on stdout.")
def plan_summary(path: Path, output_json: bool) -> None:
    """Summarize a review plan file."""

    _emit(REVIEW_CONTROLLER.plan_summary(PlanSummaryCommand(path=path, output_json=output_json)))


@ru_review.command("metrics")
@click.option("--period", default=None, help="Month to report as YYYY-MM (default: current).")
@click.option("--json", "output_json", is_flag=True, help="Emit JSON on stdout.")
def metrics(period: str | None, output_json: bool) -> None:
    """Show monthly review analytics."""

    _emit(REVIEW_CONTROLLER.metrics(MetricsCommand(period=period, output_json=output_json)))


def _shows_help(error: click.UsageError) -> bool:
    return type(error).__name__ == "NoArgsIsHelpError"


def _invalid_usage(ctx: click.Context, error: click.UsageError) -> InvalidUsageError:
    """Re-issue a usage error with exit 4, echoing the JSON error payload under --json."""

    summary = finalize_review_exit(EXIT_INVALID)
    argv = ctx.meta.get(_ARGV_KEY, [])
    if "--json" in argv:
        command = error.ctx.command.name if error.ctx is not None else None
        payload = {
            "command": command or "ru-review",
            "error": {"kind": "invalid_flag", "message": error.format_message()},
            "exit": summary.to_payload(),
        }
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
    return InvalidUsageError(f"{error.format_message()}\n{summary.message}", ctx=error.ctx)


def _emit(result: ControllerResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code:
        raise ReviewExitError(result.summary or "Command failed", result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ru_review()
