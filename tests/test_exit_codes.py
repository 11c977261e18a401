from __future__ import annotations

import allure
import pytest

from ru_review.review.exit_codes import (
    EXIT_CONFLICT,
    EXIT_INTERRUPTED,
    EXIT_INVALID,
    EXIT_PARTIAL,
    EXIT_SUCCESS,
    EXIT_SYSTEM,
    ErrorClassification,
    aggregate_exit_code,
    classify_review_error,
    exit_code_for_kind,
    finalize_review_exit,
    review_exit_code_for_classification,
    review_exit_code_for_error,
)

pytestmark = [
    allure.epic("Review Engine"),
    allure.feature("Exit Classification"),
]


@pytest.mark.parametrize(
    ("codes", "expected"),
    [
        ((0, 1, 2, 1), EXIT_CONFLICT),
        ((), EXIT_SUCCESS),
        ((1, 2, 5, 0), EXIT_INTERRUPTED),
        ((0, "3", None, "x", True), EXIT_SYSTEM),
    ],
)
def test_aggregate_takes_the_worst_code(codes: tuple, expected: int) -> None:
    assert aggregate_exit_code(*codes) == expected


@pytest.mark.parametrize(
    ("kind", "classification", "code"),
    [
        ("session_failed", ErrorClassification.PARTIAL, EXIT_PARTIAL),
        ("invalid_plan", ErrorClassification.PARTIAL, EXIT_PARTIAL),
        ("merge_conflict", ErrorClassification.CONFLICT, EXIT_CONFLICT),
        ("lock_conflict", ErrorClassification.CONFLICT, EXIT_CONFLICT),
        ("preflight_rejected", ErrorClassification.CONFLICT, EXIT_CONFLICT),
        ("missing_dependency", ErrorClassification.SYSTEM, EXIT_SYSTEM),
        ("stale_state", ErrorClassification.SYSTEM, EXIT_SYSTEM),
        ("invalid_flag", ErrorClassification.INVALID, EXIT_INVALID),
        ("checkpoint_mismatch", ErrorClassification.INVALID, EXIT_INVALID),
        ("interrupted", ErrorClassification.INTERRUPTED, EXIT_INTERRUPTED),
        (" Merge_Conflict ", ErrorClassification.CONFLICT, EXIT_CONFLICT),
        ("something_new", ErrorClassification.UNKNOWN, EXIT_PARTIAL),
    ],
)
def test_error_kinds_classify_onto_exit_codes(
    kind: str,
    classification: ErrorClassification,
    code: int,
) -> None:
    assert classify_review_error(kind) is classification
    assert exit_code_for_kind(kind) == code


def test_classification_strings_map_to_codes() -> None:
    assert review_exit_code_for_classification("conflict") == EXIT_CONFLICT
    assert review_exit_code_for_classification("bogus") == EXIT_PARTIAL


def test_driver_level_errors() -> None:
    assert review_exit_code_for_error("rate_limited") == EXIT_PARTIAL
    assert review_exit_code_for_error("tests_failed") == EXIT_CONFLICT
    assert review_exit_code_for_error("no_driver") == EXIT_SYSTEM
    assert review_exit_code_for_error("bad_mode") == EXIT_INVALID
    assert review_exit_code_for_error("max_questions") == EXIT_INTERRUPTED
    assert review_exit_code_for_error("anything") == EXIT_PARTIAL


def test_final_summary_lines() -> None:
    assert finalize_review_exit(0).message == "Review completed successfully"
    assert finalize_review_exit(2).to_payload() == {
        "exit_code": 2,
        "classification": "conflict",
        "level": "error",
        "message": "Review blocked by conflicts",
    }
    assert finalize_review_exit(5).level == "warn"
    assert finalize_review_exit(42).code == EXIT_PARTIAL
