"""Runtime configuration for review runs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

REVIEW_MODES = ("plan", "apply")
PUSH_STRATEGIES = ("push", "none")
DEFAULT_DRIVER_COMMAND_TEMPLATE = "claude -p --permission-mode acceptEdits -- {prompt}"


@dataclass(slots=True)
class PathSettings:
    """Filesystem roots shared by all review components."""

    state_dir: Path = Path("~/.local/state/ru").expanduser()
    config_dir: Path = Path("~/.config/ru").expanduser()
    projects_dir: Path = Path("/data/projects")


@dataclass(slots=True)
class GovernorSettings:
    """Rate governor knobs."""

    target_parallelism: int = 4
    poll_interval_seconds: float = 30.0
    breaker_error_threshold: int = 5
    breaker_cooldown_seconds: int = 300
    github_low_watermark: int = 500
    github_half_watermark: int = 1_000
    model_backoff_seconds: int = 60
    model_log_lookback_seconds: int = 300
    github_api_url: str = "https://api.github.com"
    github_token: str | None = None
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class PreflightSettings:
    """Admission check settings."""

    push_strategy: str = "push"
    max_untracked_files: int = 1_000
    workers: int = 8


@dataclass(slots=True)
class DriverSettings:
    """External agent driver invocation settings."""

    command_template: str = DEFAULT_DRIVER_COMMAND_TEMPLATE
    timeout_seconds: int = 3_600
    graceful_shutdown_seconds: int = 30


@dataclass(slots=True)
class ReviewSettings:
    """Review run defaults."""

    mode: str = "plan"
    max_repos: int = 0
    allow_failing_gates: bool = False
    recent_review_days: int = 0
    keep_worktrees: bool = False
    state_lock_timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    paths: PathSettings = field(default_factory=PathSettings)
    governor: GovernorSettings = field(default_factory=GovernorSettings)
    preflight: PreflightSettings = field(default_factory=PreflightSettings)
    driver: DriverSettings = field(default_factory=DriverSettings)
    review: ReviewSettings = field(default_factory=ReviewSettings)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            paths=PathSettings(
                state_dir=state_dir or resolve_state_dir(),
                config_dir=_resolve_config_dir(),
                projects_dir=Path(os.getenv("RU_PROJECTS_DIR", "/data/projects")).expanduser(),
            ),
            governor=GovernorSettings(
                target_parallelism=int(os.getenv("REVIEW_PARALLEL", "4")),
                poll_interval_seconds=float(os.getenv("RU_GOVERNOR_POLL_SECONDS", "30")),
                breaker_error_threshold=int(os.getenv("RU_GOVERNOR_ERROR_THRESHOLD", "5")),
                breaker_cooldown_seconds=int(os.getenv("RU_GOVERNOR_COOLDOWN_SECONDS", "300")),
                github_low_watermark=int(os.getenv("RU_GOVERNOR_GITHUB_LOW_WATERMARK", "500")),
                github_half_watermark=int(
                    os.getenv("RU_GOVERNOR_GITHUB_HALF_WATERMARK", "1000"),
                ),
                model_backoff_seconds=int(os.getenv("RU_GOVERNOR_MODEL_BACKOFF_SECONDS", "60")),
                model_log_lookback_seconds=int(
                    os.getenv("RU_GOVERNOR_MODEL_LOOKBACK_SECONDS", "300"),
                ),
                github_api_url=os.getenv("RU_GITHUB_API_URL", "https://api.github.com"),
                github_token=os.getenv("GH_TOKEN") or os.getenv("GITHUB_TOKEN") or None,
                request_timeout_seconds=float(os.getenv("RU_GITHUB_TIMEOUT_SECONDS", "10")),
            ),
            preflight=PreflightSettings(
                push_strategy=os.getenv("RU_PUSH_STRATEGY", "push").strip().lower(),
                max_untracked_files=int(os.getenv("RU_PREFLIGHT_MAX_UNTRACKED", "1000")),
                workers=int(os.getenv("RU_PREFLIGHT_WORKERS", "8")),
            ),
            driver=DriverSettings(
                command_template=os.getenv(
                    "RU_DRIVER_COMMAND_TEMPLATE",
                    DEFAULT_DRIVER_COMMAND_TEMPLATE,
                ),
                timeout_seconds=int(os.getenv("RU_DRIVER_TIMEOUT_SECONDS", "3600")),
                graceful_shutdown_seconds=int(
                    os.getenv("RU_DRIVER_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
            ),
            review=ReviewSettings(
                mode=os.getenv("REVIEW_MODE", "plan").strip().lower(),
                max_repos=int(os.getenv("REVIEW_MAX_REPOS", "0")),
                allow_failing_gates=_env_bool("RU_REVIEW_ALLOW_FAILING_GATES", default=False),
                recent_review_days=int(os.getenv("RU_REVIEW_SKIP_DAYS", "0")),
                keep_worktrees=_env_bool("RU_REVIEW_KEEP_WORKTREES", default=False),
                state_lock_timeout_seconds=float(
                    os.getenv("RU_STATE_LOCK_TIMEOUT_SECONDS", "30"),
                ),
            ),
        )

    def validate_for_review(self) -> None:
        """Raise configuration error if review settings are out of range."""

        if self.governor.target_parallelism <= 0:
            raise ValueError("REVIEW_PARALLEL must be a positive integer.")
        if self.governor.poll_interval_seconds <= 0:
            raise ValueError("RU_GOVERNOR_POLL_SECONDS must be > 0.")
        if self.governor.breaker_error_threshold <= 0:
            raise ValueError("RU_GOVERNOR_ERROR_THRESHOLD must be > 0.")
        if self.governor.breaker_cooldown_seconds < 0:
            raise ValueError("RU_GOVERNOR_COOLDOWN_SECONDS must be >= 0.")
        if self.governor.github_low_watermark > self.governor.github_half_watermark:
            raise ValueError(
                "RU_GOVERNOR_GITHUB_LOW_WATERMARK must not exceed "
                "RU_GOVERNOR_GITHUB_HALF_WATERMARK.",
            )
        _validate_api_url(self.governor.github_api_url)
        if self.preflight.push_strategy not in PUSH_STRATEGIES:
            raise ValueError(
                f"RU_PUSH_STRATEGY must be one of {', '.join(PUSH_STRATEGIES)}: "
                f"{self.preflight.push_strategy!r}",
            )
        if self.preflight.max_untracked_files < 0:
            raise ValueError("RU_PREFLIGHT_MAX_UNTRACKED must be >= 0.")
        if self.preflight.workers <= 0:
            raise ValueError("RU_PREFLIGHT_WORKERS must be a positive integer.")
        if "{prompt}" not in self.driver.command_template:
            raise ValueError("RU_DRIVER_COMMAND_TEMPLATE must include {prompt}.")
        if self.driver.timeout_seconds <= 0:
            raise ValueError("RU_DRIVER_TIMEOUT_SECONDS must be > 0.")
        if self.review.mode not in REVIEW_MODES:
            raise ValueError(
                f"REVIEW_MODE must be one of {', '.join(REVIEW_MODES)}: {self.review.mode!r}",
            )
        if self.review.max_repos < 0:
            raise ValueError("REVIEW_MAX_REPOS must be >= 0.")
        if self.review.recent_review_days < 0:
            raise ValueError("RU_REVIEW_SKIP_DAYS must be >= 0.")


def resolve_state_dir() -> Path:
    """Resolve the state root: RU_STATE_DIR, then XDG_STATE_HOME/ru, then ~/.local/state/ru."""

    explicit = os.getenv("RU_STATE_DIR", "").strip()
    if explicit:
        return Path(explicit).expanduser()
    xdg_state = os.getenv("XDG_STATE_HOME", "").strip()
    if xdg_state:
        return Path(xdg_state).expanduser() / "ru"
    return Path("~/.local/state/ru").expanduser()


def _resolve_config_dir() -> Path:
    explicit = os.getenv("RU_CONFIG_DIR", "").strip()
    if explicit:
        return Path(explicit).expanduser()
    xdg_config = os.getenv("XDG_CONFIG_HOME", "").strip()
    if xdg_config:
        return Path(xdg_config).expanduser() / "ru"
    return Path("~/.config/ru").expanduser()


def _validate_api_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid RU_GITHUB_API_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
