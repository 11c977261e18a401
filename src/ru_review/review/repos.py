"""Configured repository list."""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_SSH_URL_RE = re.compile(r"^[\w.-]+@[\w.-]+:(?P<path>[\w.-]+/[\w.-]+?)(?:\.git)?/?$")
_HTTP_URL_RE = re.compile(r"^https?://[^/]+/(?P<path>[\w.-]+/[\w.-]+?)(?:\.git)?/?$")
_SHORT_RE = re.compile(r"^(?P<path>[\w.-]+/[\w.-]+)$")


@dataclass(slots=True, frozen=True)
class RepoSpec:
    """Parsed ``owner/repo[@ref] [as name]`` line."""

    repo_id: str
    ref: str | None = None
    name: str | None = None


@dataclass(slots=True, frozen=True)
class RepoTarget:
    """A configured repository resolved to its local checkout."""

    repo_id: str
    local_path: Path
    ref: str | None = None


def parse_repo_spec(line: str) -> RepoSpec:
    """Parse one repo list entry; raises ``ValueError`` on unrecognized syntax."""

    text = line.strip()
    name: str | None = None
    match = re.match(r"^(?P<spec>\S+)\s+as\s+(?P<name>\S+)$", text)
    if match:
        text, name = match.group("spec"), match.group("name")
    elif " " in text:
        raise ValueError(f"Invalid repo spec: {line!r}")

    ref: str | None = None
    if "@" in text and not _SSH_URL_RE.match(text):
        text, ref = text.rsplit("@", 1)
        if not ref:
            raise ValueError(f"Empty ref in repo spec: {line!r}")

    for pattern in (_SHORT_RE, _HTTP_URL_RE, _SSH_URL_RE):
        found = pattern.match(text)
        if found:
            return RepoSpec(repo_id=found.group("path"), ref=ref, name=name)
    raise ValueError(f"Invalid repo spec: {line!r}")


def load_repo_targets(config_dir: Path, projects_dir: Path) -> list[RepoTarget]:
    """Read ``repos.d/*.txt`` in name order; first occurrence of a repo id wins."""

    repos_dir = config_dir / "repos.d"
    if not repos_dir.is_dir():
        return []
    targets: list[RepoTarget] = []
    seen: set[str] = set()
    for list_path in sorted(repos_dir.glob("*.txt")):
        for raw_line in list_path.read_text("utf-8").splitlines():
            line = raw_line.split("#", 1)[0].strip()
            if not line:
                continue
            try:
                spec = parse_repo_spec(line)
            except ValueError as error:
                logger.warning("%s: %s", list_path.name, error)
                continue
            if spec.repo_id in seen:
                continue
            seen.add(spec.repo_id)
            local_name = spec.name or spec.repo_id.split("/", 1)[1]
            targets.append(
                RepoTarget(
                    repo_id=spec.repo_id,
                    local_path=projects_dir / local_name,
                    ref=spec.ref,
                ),
            )
    return targets


def config_hash(targets: list[RepoTarget]) -> str:
    """Stable hash of the active repo list, used to gate checkpoint resume."""

    digest = hashlib.sha256()
    for target in targets:
        digest.update(f"{target.repo_id}@{target.ref or ''}\n".encode())
    return digest.hexdigest()
