from __future__ import annotations

import json
import threading
from pathlib import Path

import allure
from click.testing import CliRunner
from conftest import ReviewEnv, json_output

from ru_review import __version__
from ru_review.main import ru_review
from ru_review.review.locking import ReviewLock
from ru_review.review.metrics import MetricsRecorder, current_period
from ru_review.review.plan import parse_review_plan

pytestmark = [
    allure.epic("Review Engine"),
    allure.feature("CLI"),
]


def _invoke(*args: str):
    return CliRunner().invoke(ru_review, list(args))


def test_version() -> None:
    result = _invoke("--version")

    assert result.exit_code == 0
    assert __version__ in result.output


def test_review_status_json_without_state(review_env: ReviewEnv) -> None:
    result = _invoke("review", "--status", "--json")

    assert result.exit_code == 0
    payload = json_output(result.output)
    assert payload["command"] == "review"
    assert payload["mode"] == "status"
    assert payload["lock"] == {"held": False}
    assert payload["checkpoint"] == {"exists": False}


def test_review_status_text_shows_lock_holder(review_env: ReviewEnv) -> None:
    lock = ReviewLock(review_env.state_dir)
    lock.acquire(run_id="run-9", mode="apply")

    result = _invoke("review", "--status")

    lock.release()
    assert result.exit_code == 0
    assert "run_id=run-9 mode=apply" in result.output
    assert "Checkpoint: none" in result.output


def test_review_json_run(review_env: ReviewEnv) -> None:
    review_env.add_repo("o/alpha")
    review_env.configure("o/alpha")

    result = _invoke("review", "--json")

    assert result.exit_code == 0, result.output
    payload = json_output(result.output)
    assert payload["command"] == "review"
    assert payload["mode"] == "plan"
    assert [repo["repo"] for repo in payload["repos"]] == ["o/alpha"]
    assert payload["repos"][0]["status"] == "completed"
    assert payload["exit"]["exit_code"] == 0
    assert payload["exit"]["message"] == "Review completed successfully"


def test_review_text_run_prints_fixed_summary(review_env: ReviewEnv) -> None:
    review_env.add_repo("o/alpha")
    review_env.configure("o/alpha")

    result = _invoke("review", "--mode", "plan", "--parallel", "1")

    assert result.exit_code == 0, result.output
    assert "o/alpha: completed items=0 fixed=0" in result.output
    assert result.output.rstrip().endswith("Review completed successfully")


def test_review_dry_run_lists_admitted_repos(review_env: ReviewEnv) -> None:
    review_env.add_repo("o/alpha")
    blocked = review_env.add_repo("o/beta")
    (blocked / ".git" / "rebase-apply").mkdir()
    review_env.configure("o/alpha", "o/beta")

    result = _invoke("review", "--dry-run")

    assert result.exit_code == 0, result.output
    assert "o/beta: skipped by preflight (rebase_in_progress" in result.output
    assert "Admitted repos: 1" in result.output


def test_review_invalid_mode_exits_4(review_env: ReviewEnv) -> None:
    result = _invoke("review", "--mode", "bogus", "--json")

    assert result.exit_code == 4
    payload = json_output(result.output)
    assert payload["error"]["kind"] == "invalid_flag"
    assert payload["exit"]["classification"] == "invalid"


def test_review_resume_and_restart_conflict(review_env: ReviewEnv) -> None:
    result = _invoke("review", "--resume", "--restart")

    assert result.exit_code == 4
    assert "mutually exclusive" in result.output


def test_review_bad_environment_value_exits_4(review_env: ReviewEnv, monkeypatch) -> None:
    monkeypatch.setenv("REVIEW_PARALLEL", "lots")

    result = _invoke("review")

    assert result.exit_code == 4


def test_review_lock_conflict_exits_2(review_env: ReviewEnv) -> None:
    review_env.add_repo("o/alpha")
    review_env.configure("o/alpha")
    lock = ReviewLock(review_env.state_dir)
    lock.acquire(run_id="busy", mode="plan")

    result = _invoke("review", "--json")

    lock.release()
    assert result.exit_code == 2
    assert json_output(result.output)["error"]["kind"] == "lock_conflict"


def test_agent_sweep_dry_run_lists_dirty_repos(review_env: ReviewEnv) -> None:
    dirty = review_env.add_repo("o/dirty")
    review_env.add_repo("o/clean")
    (dirty / "wip.txt").write_text("work in progress\n", "utf-8")
    review_env.configure("o/dirty", "o/clean", "o/missing")

    result = _invoke("agent-sweep", "--dry-run", "--json")

    assert result.exit_code == 0, result.output
    payload = json_output(result.output)
    assert payload["command"] == "agent-sweep"
    assert payload["mode"] == "dry-run"
    assert [(repo["repo"], repo["status"]) for repo in payload["repos"]] == [("o/dirty", "dirty")]
    assert not ReviewLock(review_env.state_dir).marker_path.exists()


def test_agent_sweep_rejects_repo_mid_rebase(review_env: ReviewEnv) -> None:
    repo = review_env.add_repo("o/alpha")
    (repo / "wip.txt").write_text("work in progress\n", "utf-8")
    (repo / ".git" / "rebase-merge").mkdir()
    review_env.configure("o/alpha")

    result = _invoke("agent-sweep", "--json")

    assert result.exit_code == 2
    payload = json_output(result.output)
    assert payload["repos"][0]["status"] == "rejected"
    assert payload["repos"][0]["reason"] == "rebase_in_progress"
    audit = review_env.state_dir / "agent-sweep" / "preflight_results.ndjson"
    records = [json.loads(line) for line in audit.read_text("utf-8").splitlines()]
    assert records[-1]["reason"] == "rebase_in_progress"
    assert records[-1]["status"] == "failed"


def test_agent_sweep_runs_driver_in_dirty_checkout(review_env: ReviewEnv) -> None:
    repo = review_env.add_repo("o/alpha")
    (repo / "wip.txt").write_text("work in progress\n", "utf-8")
    review_env.configure("o/alpha")

    result = _invoke("agent-sweep")

    assert result.exit_code == 0, result.output
    assert "o/alpha: swept" in result.output
    plans = list((review_env.state_dir / "agent-sweep" / "plans").glob("*/o_alpha.json"))
    assert len(plans) == 1
    assert not (repo / ".ru").exists()


def test_governor_status_json(review_env: ReviewEnv) -> None:
    result = _invoke("governor-status", "--json")

    assert result.exit_code == 0
    payload = json_output(result.output)
    assert payload["command"] == "governor-status"
    assert payload["governor"]["effective_parallelism"] == 4
    assert payload["governor"]["circuit_breaker_open"] is False
    assert payload["lock"] == {"held": False}


def test_governor_status_text(review_env: ReviewEnv) -> None:
    result = _invoke("governor-status")

    assert result.exit_code == 0
    assert "Effective parallelism: 4 (target 4)" in result.output
    assert "Circuit breaker: closed" in result.output


def test_plan_validate_and_summary(tmp_path: Path) -> None:
    plan = tmp_path / "plan.json"
    plan.write_text(
        json.dumps(
            {
                "schema_version": 1,
                "repo": "o/r",
                "items": [{"type": "issue", "number": 1, "decision": "fix"}],
            },
        ),
        "utf-8",
    )
    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps({"schema_version": 1, "repo": "o/r"}), "utf-8")

    valid = _invoke("plan", "validate", str(plan))
    assert valid.exit_code == 0
    assert f"{plan}: Valid" in valid.output

    invalid = _invoke("plan", "validate", str(broken))
    assert invalid.exit_code == 1
    assert "Missing required fields: items" in invalid.output

    summary = _invoke("plan", "summary", str(plan))
    assert summary.exit_code == 0
    assert "Items reviewed: 1" in summary.output

    summary_json = _invoke("plan", "summary", str(plan), "--json")
    assert json_output(summary_json.output)["summary"]["decisions"] == {"fix": 1}


def test_metrics_command(review_env: ReviewEnv) -> None:
    empty = _invoke("metrics", "--period", "2001-01")
    assert empty.exit_code == 0
    assert "No metrics found for period 2001-01" in empty.output

    MetricsRecorder(review_env.state_dir).record_metrics_from_plan(
        parse_review_plan(
            {
                "schema_version": 1,
                "repo": "o/r",
                "items": [{"type": "issue", "number": 1, "decision": "fix"}],
            },
        ),
        duration_seconds=60,
    )
    text = _invoke("metrics")
    assert f"Review Analytics ({current_period()})" in text.output

    as_json = _invoke("metrics", "--json")
    assert json_output(as_json.output)["reviews"]["issues_resolved"] == 1

    bad = _invoke("metrics", "--period", "March")
    assert bad.exit_code == 4


def test_review_unparseable_option_value_exits_4(review_env: ReviewEnv) -> None:
    result = _invoke("review", "--parallel=abc")

    assert result.exit_code == 4
    assert "Review aborted: invalid arguments" in result.output


def test_review_unknown_flag_exits_4_with_json_payload(review_env: ReviewEnv) -> None:
    result = _invoke("review", "--bogus", "--json")

    assert result.exit_code == 4
    payload = json_output(result.output)
    assert payload["command"] == "review"
    assert payload["error"]["kind"] == "invalid_flag"
    assert "--bogus" in payload["error"]["message"]
    assert payload["exit"]["classification"] == "invalid"
    assert payload["exit"]["exit_code"] == 4


def test_unknown_subcommand_exits_4() -> None:
    result = _invoke("reveiw")

    assert result.exit_code == 4
    assert "Review aborted: invalid arguments" in result.output


def test_governor_run_exits_when_review_lock_released(review_env: ReviewEnv) -> None:
    lock = ReviewLock(review_env.state_dir)
    lock.acquire(run_id="run-7", mode="plan")
    releaser = threading.Timer(0.5, lock.release)
    releaser.start()

    result = _invoke("governor-run")

    releaser.join()
    assert result.exit_code == 0, result.output
    assert "Review lock released; governor stopped" in result.output
    assert not lock.marker_path.exists()


def test_governor_run_without_lock_does_not_start(review_env: ReviewEnv) -> None:
    result = _invoke("governor-run")

    assert result.exit_code == 0
    assert "Review lock not held; governor not started" in result.output
