from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ru_review.review.repos import RepoSpec, config_hash, load_repo_targets, parse_repo_spec

pytestmark = [
    allure.epic("Review Engine"),
    allure.feature("Repository List"),
]


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("owner/repo", RepoSpec("owner/repo")),
        ("owner/repo@develop", RepoSpec("owner/repo", ref="develop")),
        ("owner/repo as local-name", RepoSpec("owner/repo", name="local-name")),
        ("https://github.com/owner/repo.git", RepoSpec("owner/repo")),
        ("https://github.com/owner/repo@v1.2", RepoSpec("owner/repo", ref="v1.2")),
        ("git@github.com:owner/repo.git", RepoSpec("owner/repo")),
        ("  owner/my.repo  ", RepoSpec("owner/my.repo")),
    ],
)
def test_parse_repo_spec(line: str, expected: RepoSpec) -> None:
    assert parse_repo_spec(line) == expected


@pytest.mark.parametrize("line", ["justname", "owner/repo extra", "owner/repo@", "a/b/c"])
def test_parse_repo_spec_rejects_garbage(line: str) -> None:
    with pytest.raises(ValueError, match="repo spec"):
        parse_repo_spec(line)


def test_load_repo_targets_reads_lists_in_name_order(tmp_path: Path) -> None:
    repos_d = tmp_path / "config" / "repos.d"
    repos_d.mkdir(parents=True)
    (repos_d / "20-extra.txt").write_text("owner/beta\nowner/alpha@release\n", "utf-8")
    (repos_d / "10-main.txt").write_text(
        "# primary repos\nowner/alpha\n\nnot a spec at all\nother/gamma as g  # inline\n",
        "utf-8",
    )
    (repos_d / "ignored.md").write_text("owner/delta\n", "utf-8")
    projects = tmp_path / "projects"

    targets = load_repo_targets(tmp_path / "config", projects)

    assert [(t.repo_id, t.local_path, t.ref) for t in targets] == [
        ("owner/alpha", projects / "alpha", None),
        ("other/gamma", projects / "g", None),
        ("owner/beta", projects / "beta", None),
    ]


def test_load_repo_targets_without_config(tmp_path: Path) -> None:
    assert load_repo_targets(tmp_path / "nope", tmp_path) == []


def test_config_hash_tracks_ids_and_refs(tmp_path: Path) -> None:
    repos_d = tmp_path / "repos.d"
    repos_d.mkdir()
    list_path = repos_d / "repos.txt"
    list_path.write_text("o/a\no/b\n", "utf-8")
    first = config_hash(load_repo_targets(tmp_path, tmp_path))

    assert config_hash(load_repo_targets(tmp_path, tmp_path)) == first

    list_path.write_text("o/a\no/b@dev\n", "utf-8")
    assert config_hash(load_repo_targets(tmp_path, tmp_path)) != first
