"""Directory-marker locks with PID-based stale-owner reclamation.

``os.mkdir`` is the exclusive-create primitive: it either creates the marker
or fails with ``FileExistsError`` on every POSIX filesystem, across threads and
processes alike. Metadata describing the holder sits next to the marker and is
what staleness checks read. Reclaiming a stale marker happens under an exclusive
``fcntl.flock`` on a sidecar guard file, so only one contender can remove it.
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ru_review.review.contracts import (
    LockInfo,
    load_json,
    read_lock_info,
    utc_timestamp,
    write_json,
)
from ru_review.review.errors import LockConflictError

logger = logging.getLogger(__name__)

MISSING_INFO_GRACE_SECONDS = 5.0


def pid_is_alive(pid: int) -> bool:
    """Liveness check via signal 0."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OverflowError:
        return False
    return True


class DirLock:
    """Exclusive directory marker."""

    def __init__(self, marker_path: Path) -> None:
        self.marker_path = marker_path

    def try_acquire(self) -> bool:
        """Create the marker; ``False`` when someone else already holds it."""

        self.marker_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.mkdir(self.marker_path)
        except FileExistsError:
            return False
        return True

    def release(self) -> None:
        """Remove the marker; missing marker is not an error."""

        try:
            os.rmdir(self.marker_path)
        except FileNotFoundError:
            return
        except OSError:
            shutil.rmtree(self.marker_path, ignore_errors=True)

    def exists(self) -> bool:
        return self.marker_path.is_dir()

    def age_seconds(self) -> float | None:
        try:
            return time.time() - self.marker_path.stat().st_mtime
        except FileNotFoundError:
            return None


class PidFileLock:
    """DirLock plus a JSON info file naming the holder PID.

    Used for both the session-scoped review lock and the short-lived state lock.
    """

    def __init__(
        self,
        *,
        marker_path: Path,
        info_path: Path,
        missing_info_grace_seconds: float = MISSING_INFO_GRACE_SECONDS,
    ) -> None:
        self.marker = DirLock(marker_path)
        self.info_path = info_path
        self.guard_path = marker_path.with_suffix(".guard")
        self.missing_info_grace_seconds = missing_info_grace_seconds
        self._held = False

    @property
    def marker_path(self) -> Path:
        return self.marker.marker_path

    @property
    def held(self) -> bool:
        return self._held

    def read_info(self) -> LockInfo | None:
        """Return holder metadata, or ``None`` when missing or unreadable."""

        try:
            return read_lock_info(load_json(self.info_path))
        except FileNotFoundError:
            return None
        except (ValueError, TypeError):
            return None

    def check_stale_lock(self) -> bool:
        """Reclaim the lock if its holder is provably gone.

        Returns ``True`` when a stale lock was found and removed. Corrupt
        metadata is stale. Missing metadata is stale only once the marker is
        older than the grace period, since a fresh holder writes its info right
        after creating the marker. A live PID is never reclaimed.

        The read-verify-remove sequence runs under an exclusive ``flock`` on the
        guard file, so two contenders can never both reclaim the same holder.
        """

        with self._reclaim_guard():
            return self._reclaim_if_stale()

    def try_acquire(self, *, run_id: str, mode: str) -> LockInfo | None:
        """Single non-blocking attempt, with one stale-check retry."""

        acquired = self.marker.try_acquire()
        if not acquired:
            with self._reclaim_guard():
                if self._reclaim_if_stale():
                    acquired = self.marker.try_acquire()
        if not acquired:
            return None
        info = LockInfo(run_id=run_id, started_at=utc_timestamp(), pid=os.getpid(), mode=mode)
        write_json(self.info_path, info.to_payload())
        self._held = True
        return info

    def release(self) -> None:
        """Remove metadata then marker; no-op when this process is not the holder."""

        if not self._held:
            info = self.read_info()
            if info is None or info.pid != os.getpid():
                return
        self._remove_all()
        self._held = False

    def _reclaim_if_stale(self) -> bool:
        if not self.marker.exists():
            return False
        if not self.info_path.exists():
            age = self.marker.age_seconds()
            if age is None or age < self.missing_info_grace_seconds:
                return False
            logger.warning("Reclaiming lock %s without holder metadata", self.marker_path)
            self.marker.release()
            return True

        info = self.read_info()
        if info is None:
            logger.warning("Reclaiming lock %s with corrupt metadata", self.marker_path)
            self._remove_all()
            return True

        if pid_is_alive(info.pid):
            return False

        logger.warning(
            "Reclaiming lock %s from dead pid=%s run_id=%s",
            self.marker_path,
            info.pid,
            info.run_id,
        )
        self._remove_all()
        return True

    @contextmanager
    def _reclaim_guard(self) -> Iterator[None]:
        self.guard_path.parent.mkdir(parents=True, exist_ok=True)
        with self.guard_path.open("a+b") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _remove_all(self) -> None:
        self.info_path.unlink(missing_ok=True)
        self.marker.release()


class ReviewLock(PidFileLock):
    """Session-scoped lock: exactly one review run per state directory."""

    def __init__(self, state_dir: Path) -> None:
        lock_path = state_dir / "review.lock"
        super().__init__(
            marker_path=Path(f"{lock_path}.d"),
            info_path=state_dir / "review.lock.info",
        )
        self.lock_path = lock_path

    def acquire(self, *, run_id: str, mode: str) -> LockInfo:
        """Acquire or raise ``LockConflictError`` naming the live holder."""

        info = self.try_acquire(run_id=run_id, mode=mode)
        if info is not None:
            logger.info("Review lock acquired run_id=%s mode=%s", run_id, mode)
            return info
        holder = self.read_info()
        if holder is None:
            raise LockConflictError("Review lock is held by another process.")
        raise LockConflictError(
            f"Review lock is held by pid={holder.pid} run_id={holder.run_id} "
            f"mode={holder.mode} since {holder.started_at}.",
        )

    def status(self) -> dict[str, object]:
        """Lock status for operator reports; does not acquire."""

        info = self.read_info()
        payload: dict[str, object] = {"held": self.marker.exists()}
        if info is not None:
            payload.update(info.to_payload())
            payload["alive"] = pid_is_alive(info.pid)
        return payload

    @contextmanager
    def hold(self, *, run_id: str, mode: str) -> Iterator[LockInfo]:
        info = self.acquire(run_id=run_id, mode=mode)
        try:
            yield info
        finally:
            self.release()

class StateLock(PidFileLock):
    """Short-lived lock guarding read-merge-write of one shared document.

    Threads of one process serialize on an in-process mutex first; the marker
    then serializes cooperating processes.
    """

    def __init__(self, directory: Path, name: str, *, timeout_seconds: float = 30.0) -> None:
        super().__init__(
            marker_path=directory / f"{name}.lock.d",
            info_path=directory / f"{name}.lock.info",
        )
        self.timeout_seconds = timeout_seconds
        self._thread_lock = threading.Lock()

    @contextmanager
    def locked(self, *, purpose: str = "state") -> Iterator[None]:
        deadline = time.monotonic() + self.timeout_seconds
        if not self._thread_lock.acquire(timeout=self.timeout_seconds):
            raise LockConflictError(
                f"Timed out after {self.timeout_seconds}s waiting for {self.marker_path}",
            )
        try:
            delay = 0.01
            while self.try_acquire(run_id=purpose, mode="state") is None:
                if time.monotonic() >= deadline:
                    raise LockConflictError(
                        f"Timed out after {self.timeout_seconds}s waiting for {self.marker_path}",
                    )
                time.sleep(delay)
                delay = min(delay * 2, 0.2)
            try:
                yield
            finally:
                self.release()
        finally:
            self._thread_lock.release()
