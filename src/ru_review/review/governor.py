"""Rate governor: upstream headroom, driver backoff and error-burst circuit breaker.

The governor owns a :class:`GovernorState` and is the only code that mutates
it. The orchestrator reads copies via :meth:`RateGovernor.snapshot` and polls
:meth:`RateGovernor.can_start_new_session` before every dispatch.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx

from ru_review.config import GovernorSettings

logger = logging.getLogger(__name__)

DEFAULT_GITHUB_REMAINING = 5_000
MODEL_LOG_TAIL_BYTES = 64 * 1024

_MODEL_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "429",
    "rate limit",
    "rate_limit",
    "too many requests",
    "overloaded",
)


@dataclass(slots=True)
class GovernorState:
    """Governor-owned concurrency signals."""

    github_remaining: int
    github_reset: int
    model_in_backoff: bool
    model_backoff_until: float
    effective_parallelism: int
    target_parallelism: int
    circuit_breaker_open: bool
    error_count_window: int
    window_start: float

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["error_count"] = self.error_count_window
        return payload


@dataclass(slots=True)
class RateLimitSnapshot:
    """Core API headroom as reported by the VCS provider."""

    remaining: int
    reset: int


class GithubRateLimitClient:
    """Read-only client for the provider's ``/rate_limit`` endpoint."""

    def __init__(
        self,
        *,
        api_url: str = "https://api.github.com",
        token: str | None = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 1,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/vnd.github+json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def fetch(self) -> RateLimitSnapshot | None:
        """Return core headroom, or ``None`` when the API is unreachable or malformed."""

        try:
            response = self._client.get("/rate_limit")
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException:
            logger.warning("Timeout polling rate limit API")
            return None
        except httpx.HTTPError as exc:
            logger.warning("Rate limit API unavailable: %s", exc)
            return None
        except ValueError as exc:
            logger.warning("Rate limit API returned invalid JSON: %s", exc)
            return None
        return parse_rate_limit_payload(payload)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GithubRateLimitClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def parse_rate_limit_payload(payload: object) -> RateLimitSnapshot | None:
    """Extract ``resources.core.remaining/reset``."""

    if not isinstance(payload, dict):
        return None
    resources = payload.get("resources")
    if not isinstance(resources, dict):
        return None
    core = resources.get("core")
    if not isinstance(core, dict):
        return None
    remaining = core.get("remaining")
    reset = core.get("reset", 0)
    if isinstance(remaining, bool) or not isinstance(remaining, int):
        return None
    return RateLimitSnapshot(remaining=remaining, reset=reset if isinstance(reset, int) else 0)


class RateGovernor:
    """Publishes an effective parallelism limit for the orchestrator."""

    def __init__(
        self,
        *,
        settings: GovernorSettings,
        state_dir: Path,
        rate_limit_client: GithubRateLimitClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.logs_dir = state_dir / "logs"
        self._client = rate_limit_client
        self._clock = clock
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        target = max(1, settings.target_parallelism)
        self._state = GovernorState(
            github_remaining=DEFAULT_GITHUB_REMAINING,
            github_reset=0,
            model_in_backoff=False,
            model_backoff_until=0.0,
            effective_parallelism=target,
            target_parallelism=target,
            circuit_breaker_open=False,
            error_count_window=0,
            window_start=clock(),
        )

    def snapshot(self) -> GovernorState:
        """Read-only copy of the current state."""

        with self._lock:
            return replace(self._state)

    def status_payload(self) -> dict[str, Any]:
        return self.snapshot().to_payload()

    def set_target_parallelism(self, target: int) -> None:
        with self._lock:
            self._state.target_parallelism = max(1, target)
            self._state.effective_parallelism = min(
                self._state.effective_parallelism,
                self._state.target_parallelism,
            )
            if not self._state.circuit_breaker_open and self._state.effective_parallelism == 0:
                self._state.effective_parallelism = 1

    def record_error(self) -> None:
        """Count one failed session; reaching the threshold opens the breaker at once."""

        with self._lock:
            self._state.error_count_window += 1
            count = self._state.error_count_window
            if (
                not self._state.circuit_breaker_open
                and count >= self.settings.breaker_error_threshold
            ):
                self._open_breaker_locked(self._clock())
        logger.debug("Governor error recorded (window count=%d)", count)

    def adjust_parallelism(self, now: float | None = None) -> int:
        """Recompute ``effective_parallelism`` from the current signals."""

        current = self._clock() if now is None else now
        with self._lock:
            return self._adjust_locked(current)

    def can_start_new_session(self, active_sessions: int) -> bool:
        with self._lock:
            state = self._state
            if state.circuit_breaker_open or state.model_in_backoff:
                return False
            return active_sessions < state.effective_parallelism

    def update_github_rate_limit(self) -> bool:
        """Poll upstream headroom; ``False`` keeps the previous values (degraded mode)."""

        if self._client is None:
            return False
        snapshot = self._client.fetch()
        if snapshot is None:
            return False
        with self._lock:
            self._state.github_remaining = snapshot.remaining
            self._state.github_reset = snapshot.reset
        if snapshot.remaining < self.settings.github_low_watermark:
            logger.warning("GitHub API headroom low: remaining=%d", snapshot.remaining)
        return True

    def check_model_rate_limit(self, now: float | None = None) -> bool:
        """Scan recent driver logs for rate-limit signals; returns the backoff flag."""

        current = self._clock() if now is None else now
        pattern = _scan_recent_logs(
            self.logs_dir,
            now=current,
            lookback_seconds=self.settings.model_log_lookback_seconds,
        )
        with self._lock:
            state = self._state
            if pattern is not None:
                if not state.model_in_backoff:
                    logger.warning("Driver rate limit detected (%r); backing off", pattern)
                state.model_in_backoff = True
                state.model_backoff_until = current + self.settings.model_backoff_seconds
            elif state.model_in_backoff and current >= state.model_backoff_until:
                logger.info("Driver backoff expired")
                state.model_in_backoff = False
                state.model_backoff_until = 0.0
            return state.model_in_backoff

    def tick(self) -> GovernorState:
        self.update_github_rate_limit()
        self.check_model_rate_limit()
        self.adjust_parallelism()
        return self.snapshot()

    def start(self, *, lock_marker: Path | None = None) -> None:
        """Run ``tick`` in a daemon thread until :meth:`stop` or the lock marker disappears."""

        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            kwargs={"lock_marker": lock_marker},
            daemon=True,
            name="rate-governor",
        )
        self._thread.start()
        logger.info("Rate governor started")

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=15)
        self._thread = None
        logger.info("Rate governor stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self, lock_marker: Path | None) -> None:
        while not self._stop.is_set():
            if lock_marker is not None and not lock_marker.exists():
                logger.info("Lock marker %s removed; governor exiting", lock_marker)
                return
            try:
                self.tick()
            except OSError:
                logger.exception("Governor tick failed")
            self._stop.wait(timeout=self.settings.poll_interval_seconds)

    def _adjust_locked(self, now: float) -> int:
        state = self._state
        settings = self.settings
        window_elapsed = now - state.window_start >= settings.breaker_cooldown_seconds

        if state.circuit_breaker_open:
            if not window_elapsed:
                state.effective_parallelism = 0
                return 0
            if state.error_count_window > 0:
                logger.warning(
                    "Circuit breaker stays open: %d errors during cool-down",
                    state.error_count_window,
                )
                state.window_start = now
                state.error_count_window = 0
                state.effective_parallelism = 0
                return 0
            logger.info("Circuit breaker closed after error-free cool-down")
            state.circuit_breaker_open = False
            state.window_start = now
            state.effective_parallelism = 1
            return 1

        if state.error_count_window >= settings.breaker_error_threshold:
            self._open_breaker_locked(now)
            return 0

        if window_elapsed:
            state.window_start = now
            state.error_count_window = 0

        limit = state.target_parallelism
        if state.github_remaining < settings.github_low_watermark:
            limit = 1
        elif state.github_remaining < settings.github_half_watermark:
            limit = max(1, state.target_parallelism // 2)
        if state.model_in_backoff:
            limit = 1

        if state.effective_parallelism < limit:
            state.effective_parallelism = max(1, min(limit, state.effective_parallelism + 1))
        else:
            state.effective_parallelism = limit
        return state.effective_parallelism

    def _open_breaker_locked(self, now: float) -> None:
        state = self._state
        logger.warning(
            "Circuit breaker opened: %d errors within window",
            state.error_count_window,
        )
        state.circuit_breaker_open = True
        state.window_start = now
        state.error_count_window = 0
        state.effective_parallelism = 0


def run_governor_until_lock_released(
    governor: RateGovernor,
    lock_marker: Path,
    *,
    stop_event: threading.Event | None = None,
) -> None:
    """Foreground loop for a helper process launched independently of the orchestrator."""

    event = stop_event or threading.Event()
    while not event.is_set() and lock_marker.exists():
        governor.tick()
        event.wait(timeout=governor.settings.poll_interval_seconds)


def model_log_dir(state_dir: Path, day: datetime | None = None) -> Path:
    """Directory holding today's driver session logs."""

    moment = day or datetime.now(tz=UTC)
    return state_dir / "logs" / f"{moment:%Y-%m-%d}"


def _scan_recent_logs(logs_dir: Path, *, now: float, lookback_seconds: int) -> str | None:
    day_dir = logs_dir / f"{datetime.fromtimestamp(now, tz=UTC):%Y-%m-%d}"
    if not day_dir.is_dir():
        return None
    for log_path in sorted(day_dir.glob("*.log")):
        try:
            stat = log_path.stat()
        except FileNotFoundError:
            continue
        if now - stat.st_mtime > lookback_seconds:
            continue
        pattern = _first_match(_read_tail(log_path, stat.st_size), _MODEL_RATE_LIMIT_PATTERNS)
        if pattern is not None:
            return pattern
    return None


def _read_tail(path: Path, size: int) -> str:
    try:
        with path.open("rb") as handle:
            if size > MODEL_LOG_TAIL_BYTES:
                handle.seek(size - MODEL_LOG_TAIL_BYTES)
            return handle.read().decode("utf-8", errors="replace").lower()
    except FileNotFoundError:
        return ""


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
