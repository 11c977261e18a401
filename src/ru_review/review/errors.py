"""Error taxonomy shared by review components."""

from __future__ import annotations


class ReviewError(RuntimeError):
    """Base error carrying a machine-readable kind for exit classification."""

    error_kind = "unknown"

    def __init__(self, message: str, *, kind: str | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.error_kind = kind


class LockConflictError(ReviewError):
    """Review lock is held by a live process."""

    error_kind = "lock_conflict"


class StaleStateError(ReviewError):
    """JSON state document is unreadable or has an unexpected shape."""

    error_kind = "stale_state"


class PushUnsafeError(ReviewError):
    """Push was refused before any mutation happened."""

    error_kind = "push_unsafe"


class CheckpointMismatchError(ReviewError):
    """Repo list changed since the checkpoint was written."""

    error_kind = "checkpoint_mismatch"


class ResumeChoiceRequiredError(ReviewError):
    """An incomplete checkpoint exists and neither resume nor restart was chosen."""

    error_kind = "resume_choice_required"


class InvalidArgumentsError(ReviewError):
    """Run-level option validation failed."""

    error_kind = "invalid_flag"


class GitCommandError(ReviewError):
    """Git invocation failed."""

    error_kind = "git_error"


class WorktreeError(ReviewError):
    """Worktree allocation or lookup failed."""

    error_kind = "worktree_failed"


class PlanValidationError(ReviewError):
    """Review plan is missing or structurally invalid."""

    error_kind = "invalid_plan"


class DriverRunError(ReviewError):
    """Driver execution error with retryability hint."""

    error_kind = "session_failed"

    def __init__(self, message: str, *, transient: bool, kind: str | None = None) -> None:
        if kind is None:
            kind = "session_failed" if transient else "missing_dependency"
        super().__init__(message, kind=kind)
        self.transient = transient
