from __future__ import annotations

import json
import os
import subprocess
import sys
import threading
import time
from pathlib import Path

import allure
import pytest

from ru_review.review.errors import LockConflictError
from ru_review.review.locking import (
    MISSING_INFO_GRACE_SECONDS,
    DirLock,
    ReviewLock,
    StateLock,
    pid_is_alive,
)

pytestmark = [
    allure.epic("Review Engine"),
    allure.feature("Locking"),
]


def _dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait()
    return process.pid


def _plant_holder(lock: ReviewLock, *, pid: int, run_id: str = "other-run") -> None:
    lock.marker_path.mkdir(parents=True)
    lock.info_path.write_text(
        json.dumps(
            {"run_id": run_id, "started_at": "2026-01-01T00:00:00Z", "pid": pid, "mode": "plan"},
        ),
        "utf-8",
    )


def test_pid_is_alive_for_self_and_invalid_pids() -> None:
    assert pid_is_alive(os.getpid())
    assert not pid_is_alive(0)
    assert not pid_is_alive(-5)
    assert not pid_is_alive(_dead_pid())


def test_dir_lock_is_exclusive(tmp_path: Path) -> None:
    first = DirLock(tmp_path / "x.lock.d")
    second = DirLock(tmp_path / "x.lock.d")

    assert first.try_acquire()
    assert not second.try_acquire()
    first.release()
    assert second.try_acquire()
    second.release()
    second.release()


def test_review_lock_acquire_writes_holder_metadata(tmp_path: Path) -> None:
    lock = ReviewLock(tmp_path)

    info = lock.acquire(run_id="run-1", mode="plan")

    assert info.pid == os.getpid()
    assert lock.marker_path == tmp_path / "review.lock.d"
    assert lock.marker_path.is_dir()
    stored = json.loads((tmp_path / "review.lock.info").read_text("utf-8"))
    assert stored["run_id"] == "run-1"
    assert stored["mode"] == "plan"
    status = lock.status()
    assert status["held"] is True
    assert status["alive"] is True

    lock.release()

    assert not lock.marker_path.exists()
    assert not (tmp_path / "review.lock.info").exists()
    assert lock.status() == {"held": False}


def test_review_lock_refuses_live_holder(tmp_path: Path) -> None:
    holder = ReviewLock(tmp_path)
    holder.acquire(run_id="run-1", mode="apply")

    with pytest.raises(LockConflictError, match="run_id=run-1"):
        ReviewLock(tmp_path).acquire(run_id="run-2", mode="plan")

    assert json.loads(holder.info_path.read_text("utf-8"))["run_id"] == "run-1"
    holder.release()


def test_review_lock_reclaims_dead_holder(tmp_path: Path) -> None:
    lock = ReviewLock(tmp_path)
    _plant_holder(lock, pid=_dead_pid())

    info = lock.acquire(run_id="run-2", mode="plan")

    assert info.run_id == "run-2"
    assert lock.read_info().pid == os.getpid()
    lock.release()


def test_concurrent_reclaim_of_dead_holder_admits_one_contender(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    dead = 4_000_000
    _plant_holder(ReviewLock(tmp_path), pid=dead, run_id="crashed")
    results: dict[str, object] = {}
    rival = threading.Thread(
        target=lambda: results.update(
            rival=ReviewLock(tmp_path).try_acquire(run_id="run-A", mode="plan"),
        ),
    )

    def _alive(pid: int) -> bool:
        if pid == dead and rival.ident is None:
            # The rival contends after the dead holder was read but before it is removed.
            rival.start()
            rival.join(timeout=0.5)
        return pid != dead

    monkeypatch.setattr("ru_review.review.locking.pid_is_alive", _alive)
    winner = ReviewLock(tmp_path)

    info = winner.try_acquire(run_id="run-B", mode="plan")
    rival.join(timeout=10)

    assert info is not None
    assert results["rival"] is None
    assert winner.read_info().run_id == "run-B"
    winner.release()


def test_review_lock_reclaims_corrupt_metadata(tmp_path: Path) -> None:
    lock = ReviewLock(tmp_path)
    lock.marker_path.mkdir(parents=True)
    lock.info_path.write_text("{not json", "utf-8")

    lock.acquire(run_id="run-3", mode="plan")

    assert lock.read_info().run_id == "run-3"
    lock.release()


def test_missing_metadata_is_stale_only_after_grace(tmp_path: Path) -> None:
    lock = ReviewLock(tmp_path)
    lock.marker_path.mkdir(parents=True)

    with pytest.raises(LockConflictError):
        lock.acquire(run_id="run-4", mode="plan")

    old = time.time() - MISSING_INFO_GRACE_SECONDS - 5
    os.utime(lock.marker_path, (old, old))
    lock.acquire(run_id="run-4", mode="plan")
    lock.release()


def test_release_by_non_holder_is_noop(tmp_path: Path) -> None:
    lock = ReviewLock(tmp_path)
    _plant_holder(lock, pid=os.getppid())

    lock.release()

    assert lock.marker_path.is_dir()
    assert lock.info_path.exists()


def test_hold_releases_on_error(tmp_path: Path) -> None:
    lock = ReviewLock(tmp_path)

    with pytest.raises(RuntimeError), lock.hold(run_id="run-5", mode="agent-sweep"):
        assert lock.status()["mode"] == "agent-sweep"
        raise RuntimeError("boom")

    assert not lock.marker_path.exists()


def test_state_lock_serializes_read_modify_write(tmp_path: Path) -> None:
    lock = StateLock(tmp_path, "counter", timeout_seconds=10)
    counter = tmp_path / "counter.txt"
    counter.write_text("0", "utf-8")

    def _bump() -> None:
        for _ in range(20):
            with lock.locked():
                value = int(counter.read_text("utf-8"))
                counter.write_text(str(value + 1), "utf-8")

    threads = [threading.Thread(target=_bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter.read_text("utf-8") == "80"
    assert not (tmp_path / "counter.lock.d").exists()


def test_state_lock_times_out_against_live_holder(tmp_path: Path) -> None:
    blocker = ReviewLock(tmp_path)
    lock = StateLock(tmp_path, "review", timeout_seconds=0.3)
    _plant_holder(blocker, pid=os.getppid())

    with pytest.raises(LockConflictError, match="Timed out"), lock.locked():
        pass
