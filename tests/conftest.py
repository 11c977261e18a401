"""Shared test fixtures."""

from __future__ import annotations

import json
import shlex
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

ECHO_DRIVER_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m ru_review.review.driver.echo_driver {{prompt}} "
    "--plan-file {plan_file} --repo {repo}"
)


def echo_template(*extra: str) -> str:
    """Echo driver template with extra driver flags appended."""

    return " ".join([ECHO_DRIVER_COMMAND_TEMPLATE, *extra])


def git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", "-C", str(repo), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout.strip()


def json_output(output: str) -> dict:
    """First JSON document in CLI output; stderr lines may trail it."""

    payload, _ = json.JSONDecoder().raw_decode(output[output.index("{") :])
    return payload


@dataclass(slots=True)
class RepoFactory:
    root: Path
    remotes: Path

    def create(self, name: str, *, remote: bool = True, identity: bool = True) -> Path:
        path = self.root / name
        path.mkdir(parents=True)
        git(path, "init", "--quiet", "-b", "main")
        if identity:
            git(path, "config", "user.email", "review@example.com")
            git(path, "config", "user.name", "Review Bot")
        (path / "README.md").write_text(f"# {name}\n", "utf-8")
        git(path, "add", "README.md")
        git(
            path,
            "-c",
            "user.email=seed@example.com",
            "-c",
            "user.name=Seed",
            "commit",
            "--quiet",
            "-m",
            "Initial commit",
        )
        if remote:
            bare = self.remotes / f"{name}.git"
            bare.parent.mkdir(parents=True, exist_ok=True)
            subprocess.run(
                ["git", "init", "--quiet", "--bare", "-b", "main", str(bare)],
                check=True,
                capture_output=True,
            )
            git(path, "remote", "add", "origin", str(bare))
            git(path, "push", "--quiet", "-u", "origin", "main")
        return path

    def commit(self, repo: Path, filename: str, content: str, message: str) -> str:
        (repo / filename).write_text(content, "utf-8")
        git(repo, "add", filename)
        git(repo, "commit", "--quiet", "-m", message)
        return git(repo, "rev-parse", "HEAD")

    def remote_path(self, name: str) -> Path:
        return self.remotes / f"{name}.git"


@dataclass(slots=True)
class ReviewEnv:
    state_dir: Path
    config_dir: Path
    projects_dir: Path
    repos: RepoFactory

    def configure(self, *repo_ids: str) -> None:
        list_path = self.config_dir / "repos.d" / "repos.txt"
        list_path.parent.mkdir(parents=True, exist_ok=True)
        list_path.write_text("".join(f"{repo_id}\n" for repo_id in repo_ids), "utf-8")

    def add_repo(self, repo_id: str, **kwargs) -> Path:
        return self.repos.create(repo_id.split("/", 1)[1], **kwargs)


@pytest.fixture(autouse=True)
def isolated_git(tmp_path_factory, monkeypatch):
    """Keep the developer's git and provider configuration out of tests."""

    global_config = tmp_path_factory.mktemp("gitconfig") / "config"
    global_config.write_text("", "utf-8")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for name in (
        "GIT_AUTHOR_NAME",
        "GIT_AUTHOR_EMAIL",
        "GIT_COMMITTER_NAME",
        "GIT_COMMITTER_EMAIL",
        "GH_TOKEN",
        "GITHUB_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repo_factory(tmp_path: Path) -> RepoFactory:
    return RepoFactory(root=tmp_path / "projects", remotes=tmp_path / "remotes")


@pytest.fixture()
def review_env(tmp_path: Path, monkeypatch, repo_factory: RepoFactory) -> ReviewEnv:
    """Point every review path at tmp_path and drive sessions with the echo driver."""

    env = ReviewEnv(
        state_dir=tmp_path / "state",
        config_dir=tmp_path / "config",
        projects_dir=repo_factory.root,
        repos=repo_factory,
    )
    monkeypatch.setenv("RU_STATE_DIR", str(env.state_dir))
    monkeypatch.setenv("RU_CONFIG_DIR", str(env.config_dir))
    monkeypatch.setenv("RU_PROJECTS_DIR", str(env.projects_dir))
    monkeypatch.setenv("RU_DRIVER_COMMAND_TEMPLATE", ECHO_DRIVER_COMMAND_TEMPLATE)
    monkeypatch.setenv("RU_DRIVER_TIMEOUT_SECONDS", "120")
    monkeypatch.setenv("RU_DRIVER_GRACEFUL_SHUTDOWN_SECONDS", "1")
    monkeypatch.setenv("RU_GOVERNOR_POLL_SECONDS", "0.2")
    for name in (
        "XDG_STATE_HOME",
        "REVIEW_MODE",
        "REVIEW_PARALLEL",
        "REVIEW_MAX_REPOS",
        "RU_PUSH_STRATEGY",
        "RU_REVIEW_SKIP_DAYS",
        "RU_REVIEW_KEEP_WORKTREES",
        "RU_REVIEW_ALLOW_FAILING_GATES",
    ):
        monkeypatch.delenv(name, raising=False)
    return env
