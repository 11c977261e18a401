"""Review driver implementations."""

from ru_review.review.driver.base import DriverRunRequest, DriverRunResult, ReviewDriver
from ru_review.review.driver.cli_driver import CliReviewDriver, build_review_prompt

__all__ = [
    "CliReviewDriver",
    "DriverRunRequest",
    "DriverRunResult",
    "ReviewDriver",
    "build_review_prompt",
]
