"""Exit-code classification and run-level aggregation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_CONFLICT = 2
EXIT_SYSTEM = 3
EXIT_INVALID = 4
EXIT_INTERRUPTED = 5


class ErrorClassification(str, Enum):
    """Coarse error classes that map one-to-one onto exit codes."""

    PARTIAL = "partial"
    CONFLICT = "conflict"
    SYSTEM = "system"
    INVALID = "invalid"
    INTERRUPTED = "interrupted"
    UNKNOWN = "unknown"


_CLASSIFICATION_BY_KIND: dict[str, ErrorClassification] = {
    "session_failed": ErrorClassification.PARTIAL,
    "session_timeout": ErrorClassification.PARTIAL,
    "invalid_plan": ErrorClassification.PARTIAL,
    "push_unsafe": ErrorClassification.PARTIAL,
    "push_rejected": ErrorClassification.PARTIAL,
    "worktree_failed": ErrorClassification.PARTIAL,
    "rate_limited": ErrorClassification.PARTIAL,
    "merge_conflict": ErrorClassification.CONFLICT,
    "lock_conflict": ErrorClassification.CONFLICT,
    "preflight_rejected": ErrorClassification.CONFLICT,
    "dirty_repo": ErrorClassification.CONFLICT,
    "missing_dependency": ErrorClassification.SYSTEM,
    "git_error": ErrorClassification.SYSTEM,
    "stale_state": ErrorClassification.SYSTEM,
    "invalid_flag": ErrorClassification.INVALID,
    "invalid_repo": ErrorClassification.INVALID,
    "checkpoint_mismatch": ErrorClassification.INVALID,
    "resume_choice_required": ErrorClassification.INVALID,
    "interrupted": ErrorClassification.INTERRUPTED,
}

_EXIT_CODE_BY_CLASSIFICATION: dict[ErrorClassification, int] = {
    ErrorClassification.PARTIAL: EXIT_PARTIAL,
    ErrorClassification.CONFLICT: EXIT_CONFLICT,
    ErrorClassification.SYSTEM: EXIT_SYSTEM,
    ErrorClassification.INVALID: EXIT_INVALID,
    ErrorClassification.INTERRUPTED: EXIT_INTERRUPTED,
    ErrorClassification.UNKNOWN: EXIT_PARTIAL,
}

_EXIT_CODE_BY_REVIEW_ERROR: dict[str, int] = {
    "rate_limited": EXIT_PARTIAL,
    "tests_failed": EXIT_CONFLICT,
    "no_driver": EXIT_SYSTEM,
    "bad_mode": EXIT_INVALID,
    "max_questions": EXIT_INTERRUPTED,
}


@dataclass(slots=True, frozen=True)
class ExitSummary:
    """Fixed operator-facing line for one exit code."""

    code: int
    classification: str
    level: str
    message: str

    def to_payload(self) -> dict[str, object]:
        return {
            "exit_code": self.code,
            "classification": self.classification,
            "level": self.level,
            "message": self.message,
        }


_EXIT_SUMMARIES: dict[int, ExitSummary] = {
    EXIT_SUCCESS: ExitSummary(EXIT_SUCCESS, "success", "success", "Review completed successfully"),
    EXIT_PARTIAL: ExitSummary(
        EXIT_PARTIAL,
        ErrorClassification.PARTIAL.value,
        "warn",
        "Review completed with partial failures",
    ),
    EXIT_CONFLICT: ExitSummary(
        EXIT_CONFLICT,
        ErrorClassification.CONFLICT.value,
        "error",
        "Review blocked by conflicts",
    ),
    EXIT_SYSTEM: ExitSummary(
        EXIT_SYSTEM,
        ErrorClassification.SYSTEM.value,
        "error",
        "Review failed due to a system error",
    ),
    EXIT_INVALID: ExitSummary(
        EXIT_INVALID,
        ErrorClassification.INVALID.value,
        "error",
        "Review aborted: invalid arguments",
    ),
    EXIT_INTERRUPTED: ExitSummary(
        EXIT_INTERRUPTED,
        ErrorClassification.INTERRUPTED.value,
        "warn",
        "Review interrupted",
    ),
}


def classify_review_error(kind: str) -> ErrorClassification:
    """Map a free-form error identifier onto an :class:`ErrorClassification`."""

    return _CLASSIFICATION_BY_KIND.get(kind.strip().lower(), ErrorClassification.UNKNOWN)


def review_exit_code_for_classification(classification: ErrorClassification | str) -> int:
    try:
        normalized = ErrorClassification(classification)
    except ValueError:
        normalized = ErrorClassification.UNKNOWN
    return _EXIT_CODE_BY_CLASSIFICATION[normalized]


def review_exit_code_for_error(error: str) -> int:
    """Exit code for driver-level review errors (rate limit, failing tests, ...)."""

    return _EXIT_CODE_BY_REVIEW_ERROR.get(error.strip().lower(), EXIT_PARTIAL)


def exit_code_for_kind(kind: str) -> int:
    return review_exit_code_for_classification(classify_review_error(kind))


def aggregate_exit_code(*codes: object) -> int:
    """Highest exit code observed; non-numeric values are ignored, no input is success."""

    worst = EXIT_SUCCESS
    for code in codes:
        value = _coerce_exit_code(code)
        if value is not None and value > worst:
            worst = value
    return worst


def finalize_review_exit(code: int) -> ExitSummary:
    """Summary for a final exit code; out-of-range codes report as partial failure."""

    return _EXIT_SUMMARIES.get(code, _EXIT_SUMMARIES[EXIT_PARTIAL])


def _coerce_exit_code(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None
