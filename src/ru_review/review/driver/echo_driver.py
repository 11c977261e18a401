"""Local deterministic driver for integration tests and smoke runs."""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
from pathlib import Path

from ru_review.review.plan import PLAN_SCHEMA_VERSION


def main(argv: list[str] | None = None) -> int:
    """Write a valid review plan for ``--repo`` into ``--plan-file``."""

    parser = argparse.ArgumentParser()
    parser.add_argument("prompt", nargs="?", default="")
    parser.add_argument("--plan-file", required=True)
    parser.add_argument("--repo", required=True)
    parser.add_argument(
        "--item",
        action="append",
        default=[],
        help="type:number:decision, repeatable",
    )
    parser.add_argument("--question", action="append", default=[])
    parser.add_argument("--commit", action="store_true")
    parser.add_argument("--fail", action="store_true")
    parser.add_argument("--rate-limit", action="store_true")
    parser.add_argument("--tests-fail", action="store_true")
    args = parser.parse_args(argv)

    if args.rate_limit:
        print("Error: 429 Too Many Requests (rate limit exceeded)")  # noqa: T201
    if args.fail:
        print(f"echo driver failing on request for {args.repo}")  # noqa: T201
        return 1

    commits: list[dict[str, str]] = []
    if args.commit:
        commits.append(_commit_marker(args.repo))

    items = []
    for raw in args.item:
        item_type, number, decision = raw.split(":", 2)
        items.append({"type": item_type, "number": int(number), "decision": decision})

    payload = {
        "schema_version": PLAN_SCHEMA_VERSION,
        "repo": args.repo,
        "items": items,
        "questions": [
            {"id": question_id, "prompt": f"Question {question_id}?", "answered": False}
            for question_id in args.question
        ],
        "git": {
            "branch": os.getenv("RU_REVIEW_BRANCH") or None,
            "base_ref": os.getenv("RU_REVIEW_BASE_REF") or None,
            "commits": commits,
            "tests": {"ran": True, "ok": not args.tests_fail},
        },
        "gh_actions": [],
        "metadata": {
            "driver": "echo_driver",
            "mode": os.getenv("RU_REVIEW_MODE", "plan"),
            "run_id": os.getenv("RU_REVIEW_RUN_ID", ""),
        },
    }
    plan_file = Path(args.plan_file)
    plan_file.parent.mkdir(parents=True, exist_ok=True)
    plan_file.write_text(json.dumps(payload, indent=2, sort_keys=True), "utf-8")
    return 0


def _commit_marker(repo_id: str) -> dict[str, str]:
    marker = Path("REVIEWED.md")
    marker.write_text(f"Reviewed {repo_id}\n", "utf-8")
    subprocess.run(["git", "add", str(marker)], check=True)  # noqa: S603, S607
    subprocess.run(  # noqa: S603
        ["git", "commit", "--quiet", "-m", f"Review {repo_id}"],  # noqa: S607
        check=True,
    )
    sha = subprocess.run(
        ["git", "rev-parse", "HEAD"],  # noqa: S607
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()
    return {"sha": sha, "message": f"Review {repo_id}"}


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
