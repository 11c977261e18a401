"""Driver interface for per-repo review sessions."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class DriverRunRequest:
    """Inputs required to run one review session in a worktree."""

    repo_id: str
    worktree_path: Path
    plan_path: Path
    prompt: str
    log_path: Path
    timeout_seconds: int
    command_template: str
    mode: str = "plan"
    run_id: str = ""
    branch: str = ""
    base_ref: str = ""
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None
    prompt_path: Path | None = None


@dataclass(slots=True)
class DriverRunResult:
    """Execution outcome from a driver session."""

    exit_code: int
    timed_out: bool
    log_path: Path


class ReviewDriver(Protocol):
    """Protocol implemented by driver runners."""

    def run(self, request: DriverRunRequest) -> DriverRunResult:
        """Run one review session and return execution metadata."""
