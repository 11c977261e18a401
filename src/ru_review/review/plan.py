"""Review plan contract produced by the agent driver and consumed by the engine."""

from __future__ import annotations

import json
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ru_review.review.errors import PlanValidationError

PLAN_SCHEMA_VERSION = 1
PLAN_RELATIVE_PATH = Path(".ru") / "review-plan.json"

ITEM_TYPES = frozenset({"issue", "pr"})
ITEM_DECISIONS = frozenset(
    {"fix", "skip", "close", "merge", "needs-info", "duplicate", "wontfix", "defer"},
)
GH_ACTION_OPS = frozenset({"comment", "close", "label", "merge"})
RESOLVED_DECISIONS = frozenset({"fix", "close", "merge", "duplicate", "wontfix"})

_REQUIRED_FIELDS = ("schema_version", "repo", "items")
_ITEM_REQUIRED_FIELDS = ("type", "number", "decision")
_GH_TARGET_RE = re.compile(r"^(issue|pr)#\d+$")


@dataclass(slots=True)
class PlanItem:
    """One reviewed issue or PR."""

    type: str
    number: int
    decision: str
    notes: str = ""


@dataclass(slots=True)
class PlanQuestion:
    """A question the driver needs a human to answer."""

    id: str
    prompt: str
    answered: bool
    answer: str | None = None
    options: list[str] = field(default_factory=list)
    recommended: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "options": list(self.options),
            "recommended": self.recommended,
            "answered": self.answered,
            "answer": self.answer,
        }


@dataclass(slots=True)
class PlanTests:
    """Recorded test-runner result."""

    ran: bool = False
    ok: bool | None = None
    command: str | None = None
    output_summary: str | None = None


@dataclass(slots=True)
class PlanGit:
    """Proposed commits and quality-gate results."""

    branch: str | None = None
    base_ref: str | None = None
    commits: list[dict[str, Any]] = field(default_factory=list)
    quality_gates_ok: bool | None = None
    quality_gates_warning: bool = False
    tests: PlanTests = field(default_factory=PlanTests)


@dataclass(slots=True)
class GhAction:
    """Provider-side mutation the plan asks for."""

    op: str
    target: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ReviewPlan:
    """Validated review plan."""

    repo: str
    items: list[PlanItem]
    questions: list[PlanQuestion]
    git: PlanGit
    gh_actions: list[GhAction]
    metadata: dict[str, Any]
    raw: dict[str, Any]

    def unanswered_questions(self) -> list[PlanQuestion]:
        return [question for question in self.questions if not question.answered]

    def decision_counts(self) -> Counter[str]:
        return Counter(item.decision for item in self.items)


def plan_path_for(worktree: Path) -> Path:
    return worktree / PLAN_RELATIVE_PATH


def read_review_plan(path: Path) -> ReviewPlan:
    """Load and validate a plan, raising ``PlanValidationError`` with a precise reason."""

    if not path.exists():
        raise PlanValidationError(f"Plan file not found: {path}")
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as error:
        raise PlanValidationError(f"Invalid JSON in plan file: {error}") from error
    if not isinstance(payload, dict):
        raise PlanValidationError("Invalid JSON in plan file: top level must be an object")
    return parse_review_plan(payload)


def parse_review_plan(payload: dict[str, Any]) -> ReviewPlan:
    missing = [name for name in _REQUIRED_FIELDS if name not in payload]
    if missing:
        raise PlanValidationError(f"Missing required fields: {', '.join(missing)}")
    if str(payload["schema_version"]).strip() != str(PLAN_SCHEMA_VERSION):
        raise PlanValidationError(f"Unsupported schema version: {payload['schema_version']!r}")
    if not isinstance(payload["repo"], str) or not isinstance(payload["items"], list):
        raise PlanValidationError("Missing required fields: repo must be a string, items a list")

    items = [_read_item(index, raw) for index, raw in enumerate(payload["items"])]
    questions = [
        _read_question(index, raw) for index, raw in enumerate(_list(payload, "questions"))
    ]
    gh_actions = [
        _read_gh_action(index, raw) for index, raw in enumerate(_list(payload, "gh_actions"))
    ]
    metadata = payload.get("metadata")
    return ReviewPlan(
        repo=payload["repo"],
        items=items,
        questions=questions,
        git=_read_git(payload.get("git")),
        gh_actions=gh_actions,
        metadata=metadata if isinstance(metadata, dict) else {},
        raw=payload,
    )


def validate_review_plan(path: Path) -> str:
    """Return ``"Valid"`` or the validation failure message."""

    try:
        read_review_plan(path)
    except PlanValidationError as error:
        return str(error)
    return "Valid"


def summarize_review_plan(path: Path) -> list[str]:
    """Human-readable plan summary lines."""

    try:
        plan = read_review_plan(path)
    except PlanValidationError as error:
        return [f"Cannot summarize invalid plan: {error}"]

    decisions = plan.decision_counts()
    issues = sum(1 for item in plan.items if item.type == "issue")
    prs = sum(1 for item in plan.items if item.type == "pr")
    lines = [
        f"Repository: {plan.repo}",
        f"Items reviewed: {len(plan.items)}",
        f"  Fixed: {decisions.get('fix', 0)}",
        f"  Skipped: {decisions.get('skip', 0)}",
        f"  Issues: {issues}",
        f"  PRs: {prs}",
        f"Commits: {len(plan.git.commits)}",
        f"Tests: {_tests_label(plan.git.tests)}",
    ]
    unanswered = plan.unanswered_questions()
    if unanswered:
        lines.append(f"Questions pending: {len(unanswered)}")
    lines.append(f"gh_actions pending: {len(plan.gh_actions)}")
    return lines


def summarize_review_plan_json(path: Path) -> dict[str, Any]:
    try:
        plan = read_review_plan(path)
    except PlanValidationError as error:
        return {"plan_file": str(path), "error": str(error)}
    decisions = plan.decision_counts()
    return {
        "plan_file": str(path),
        "repo": plan.repo,
        "summary": {
            "total_items": len(plan.items),
            "issues": sum(1 for item in plan.items if item.type == "issue"),
            "prs": sum(1 for item in plan.items if item.type == "pr"),
            "decisions": dict(sorted(decisions.items())),
            "questions_pending": len(plan.unanswered_questions()),
        },
        "commits": len(plan.git.commits),
        "tests": _tests_label(plan.git.tests),
        "gh_actions_count": len(plan.gh_actions),
    }


def _tests_label(tests: PlanTests) -> str:
    if not tests.ran:
        return "not run"
    return "PASS" if tests.ok else "FAIL"


def _list(payload: dict[str, Any], key: str) -> list[Any]:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise PlanValidationError(f"Plan field {key} must be a list")
    return value


def _read_item(index: int, raw: object) -> PlanItem:
    if not isinstance(raw, dict) or any(name not in raw for name in _ITEM_REQUIRED_FIELDS):
        raise PlanValidationError(f"Items missing required fields (items[{index}])")
    if raw["type"] not in ITEM_TYPES:
        raise PlanValidationError(f"Invalid item type at items[{index}]: {raw['type']!r}")
    if raw["decision"] not in ITEM_DECISIONS:
        raise PlanValidationError(f"Invalid decision at items[{index}]: {raw['decision']!r}")
    try:
        number = int(raw["number"])
    except (TypeError, ValueError):
        number = 0
    notes = raw.get("notes", raw.get("title", ""))
    return PlanItem(
        type=raw["type"],
        number=number,
        decision=raw["decision"],
        notes=notes if isinstance(notes, str) else "",
    )


def _read_question(index: int, raw: object) -> PlanQuestion:
    if not isinstance(raw, dict) or "id" not in raw:
        raise PlanValidationError(f"Questions missing required fields (questions[{index}])")
    options = raw.get("options")
    recommended = raw.get("recommended")
    answer = raw.get("answer")
    return PlanQuestion(
        id=str(raw["id"]),
        prompt=str(raw.get("prompt", raw.get("question", ""))),
        answered=bool(raw.get("answered", False)),
        answer=str(answer) if answer is not None else None,
        options=[str(option) for option in options] if isinstance(options, list) else [],
        recommended=str(recommended) if recommended is not None else None,
    )


def _read_gh_action(index: int, raw: object) -> GhAction:
    if not isinstance(raw, dict):
        raise PlanValidationError(f"Invalid gh_action op at gh_actions[{index}]")
    op = raw.get("op")
    if op not in GH_ACTION_OPS:
        raise PlanValidationError(f"Invalid gh_action op at gh_actions[{index}]: {op!r}")
    target = raw.get("target")
    if not isinstance(target, str) or not _GH_TARGET_RE.match(target):
        raise PlanValidationError(f"Invalid gh_action target at gh_actions[{index}]: {target!r}")
    return GhAction(
        op=raw["op"],
        target=target,
        payload={k: v for k, v in raw.items() if k not in {"op", "target"}},
    )


def _read_git(raw: object) -> PlanGit:
    if raw is None:
        return PlanGit()
    if not isinstance(raw, dict):
        raise PlanValidationError("Plan field git must be an object")
    commits = raw.get("commits", [])
    tests = raw.get("tests") if isinstance(raw.get("tests"), dict) else {}
    gates_ok = raw.get("quality_gates_ok")
    tests_ok = tests.get("ok")
    return PlanGit(
        branch=raw.get("branch") if isinstance(raw.get("branch"), str) else None,
        base_ref=raw.get("base_ref") if isinstance(raw.get("base_ref"), str) else None,
        commits=[commit for commit in commits if isinstance(commit, dict)]
        if isinstance(commits, list)
        else [],
        quality_gates_ok=gates_ok if isinstance(gates_ok, bool) else None,
        quality_gates_warning=bool(raw.get("quality_gates_warning", False)),
        tests=PlanTests(
            ran=bool(tests.get("ran", False)),
            ok=tests_ok if isinstance(tests_ok, bool) else None,
            command=tests.get("command") if isinstance(tests.get("command"), str) else None,
            output_summary=tests.get("output_summary")
            if isinstance(tests.get("output_summary"), str)
            else None,
        ),
    )
