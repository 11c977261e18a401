"""Subprocess-based driver runner for CLI review agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import IO

from ru_review.review.driver.base import DriverRunRequest, DriverRunResult
from ru_review.review.errors import DriverRunError
from ru_review.review.plan import PLAN_RELATIVE_PATH, PLAN_SCHEMA_VERSION

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
PROMPT_RELATIVE_PATH = Path(".ru") / "prompt.txt"


class CliReviewDriver:
    """Execute the configured CLI agent inside a review worktree."""

    def run(self, request: DriverRunRequest) -> DriverRunResult:
        request.log_path.parent.mkdir(parents=True, exist_ok=True)
        request.plan_path.parent.mkdir(parents=True, exist_ok=True)

        prompt_file = request.prompt_path or request.worktree_path / PROMPT_RELATIVE_PATH
        prompt_file.parent.mkdir(parents=True, exist_ok=True)
        prompt_file.write_text(request.prompt, "utf-8")

        run_args = _build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            prompt_file=prompt_file,
            worktree=request.worktree_path,
            plan_file=request.plan_path,
            repo_id=request.repo_id,
        )

        env = os.environ.copy()
        env["RU_REVIEW_REPO"] = request.repo_id
        env["RU_REVIEW_MODE"] = request.mode
        env["RU_REVIEW_RUN_ID"] = request.run_id
        env["RU_REVIEW_BRANCH"] = request.branch
        env["RU_REVIEW_BASE_REF"] = request.base_ref
        env["RU_REVIEW_PLAN_FILE"] = str(request.plan_path)

        logger.info("Starting driver for %s: %s", request.repo_id, run_args[0])
        try:
            with request.log_path.open("a", encoding="utf-8") as log_handle:
                return _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=request.worktree_path,
                    timeout_seconds=request.timeout_seconds,
                    log_handle=log_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                    log_path=request.log_path,
                )
        except FileNotFoundError as error:
            raise DriverRunError(
                f"Driver command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise DriverRunError(
                f"Driver failed to start: {error}",
                transient=True,
            ) from error


def build_review_prompt(
    *,
    repo_id: str,
    mode: str,
    branch: str,
    base_ref: str,
) -> str:
    """Instructions handed to the agent; the plan file is the only contract back."""

    apply_note = (
        "Commit your fixes on the current branch; the engine merges and pushes them.\n"
        if mode == "apply"
        else "Do not commit. Record what you would change in the plan only.\n"
    )
    return (
        f"Review open issues and pull requests for {repo_id}.\n"
        f"\n"
        f"You are working in an isolated git worktree on branch {branch} "
        f"(based on {base_ref}).\n"
        f"{apply_note}"
        f"\n"
        f"When done, write {PLAN_RELATIVE_PATH} with:\n"
        f'  "schema_version": {PLAN_SCHEMA_VERSION},\n'
        f'  "repo": "{repo_id}",\n'
        f'  "items": [{{"type": "issue|pr", "number": N, "decision": "fix|skip|..."}}],\n'
        f'  "questions": [{{"id": "q1", "prompt": "...", "answered": false}}],\n'
        f'  "git": {{"branch": "{branch}", "base_ref": "{base_ref}", "commits": [],\n'
        f'          "tests": {{"ran": true, "ok": true}}}}\n'
        f"\n"
        f"Do not push. Do not modify files outside this worktree.\n"
    )


def _build_run_args(  # noqa: PLR0913
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    worktree: Path,
    plan_file: Path,
    repo_id: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise DriverRunError("Driver command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise DriverRunError(
            "Driver command template must include {prompt}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            worktree=shlex.quote(str(worktree)),
            plan_file=shlex.quote(str(plan_file)),
            repo=shlex.quote(repo_id),
        )
    except (KeyError, IndexError) as error:
        raise DriverRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise DriverRunError(
            "Driver command template rendered empty command.",
            transient=False,
        )
    return argv


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    log_handle: IO[str],
    shutdown_requested,
    graceful_shutdown_seconds: int | None,
    log_path: Path,
) -> DriverRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=log_handle,
        stderr=subprocess.STDOUT,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return DriverRunResult(exit_code=returncode, timed_out=False, log_path=log_path)

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            logger.warning("Driver exceeded %ss timeout; terminating", timeout_seconds)
            _terminate_process(process)
            return DriverRunResult(exit_code=TIMEOUT_EXIT_CODE, timed_out=True, log_path=log_path)

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return DriverRunResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    log_path=log_path,
                )

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
