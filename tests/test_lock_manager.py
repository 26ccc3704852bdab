"""Tests for LockManager acquisition, verification and release."""

from __future__ import annotations

import shutil
import threading
import time
from pathlib import Path

import pytest

from conftest import build_lock_info, overwrite_marker_info, plant_marker
from safe_release.core.exceptions import LockLostError, LockTimeoutError
from safe_release.core.locks.backends import current_holder_id
from safe_release.core.locks.manager import LockManager


def _manager(lock_dir: Path, backend_name: str = "directory", **kwargs) -> LockManager:
    kwargs.setdefault("poll_interval", 0.02)
    kwargs.setdefault("stale_after_seconds", 60)
    return LockManager(lock_dir, backend_name=backend_name, **kwargs)


def _remove_marker(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    else:
        path.unlink()


def test_acquire_creates_marker_and_release_removes_it(lock_dir: Path, backend_name: str) -> None:
    manager = _manager(lock_dir, backend_name)

    handle = manager.acquire("macos", timeout_seconds=1)

    assert handle.lock_path.exists()
    assert handle.holder_id == current_holder_id()
    info = manager.read_info("macos")
    assert info["lock_id"] == handle.lock_id
    assert info["resource_name"] == "macos"
    assert info["backend"] == backend_name

    handle.release()
    assert handle.released is True
    assert not handle.lock_path.exists()
    assert manager.read_info("macos") is None


def test_resources_lock_independently(lock_dir: Path) -> None:
    manager = _manager(lock_dir)

    with manager.acquire("macos", timeout_seconds=1), manager.acquire("linux", timeout_seconds=1) as linux:
        linux.verify()


def test_release_twice_never_removes_successor_marker(lock_dir: Path, backend_name: str) -> None:
    manager = _manager(lock_dir, backend_name)
    first = manager.acquire("macos", timeout_seconds=1)
    first.release()
    second = manager.acquire("macos", timeout_seconds=1)

    first.release()

    second.verify()
    assert manager.read_info("macos")["lock_id"] == second.lock_id
    second.release()


def test_verify_passes_while_held(lock_dir: Path, backend_name: str) -> None:
    with _manager(lock_dir, backend_name).acquire("macos", timeout_seconds=1) as handle:
        handle.verify()
        handle.verify()


def test_verify_fails_after_release(lock_dir: Path) -> None:
    handle = _manager(lock_dir).acquire("macos", timeout_seconds=1)
    handle.release()

    with pytest.raises(LockLostError, match="already released"):
        handle.verify()


def test_verify_fails_when_marker_removed_externally(lock_dir: Path, backend_name: str) -> None:
    handle = _manager(lock_dir, backend_name).acquire("macos", timeout_seconds=1)
    _remove_marker(handle.lock_path)

    with pytest.raises(LockLostError) as exc_info:
        handle.verify()

    assert exc_info.value.exit_code == 4
    assert "no longer exists" in str(exc_info.value)
    handle.release()


def test_verify_fails_on_holder_mismatch_and_release_leaves_marker(lock_dir: Path, backend_name: str) -> None:
    manager = _manager(lock_dir, backend_name)
    handle = manager.acquire("macos", timeout_seconds=1)
    overwrite_marker_info(backend_name, handle.lock_path, build_lock_info("usurper"))

    with pytest.raises(LockLostError, match="holder mismatch"):
        handle.verify()

    handle.release()
    assert handle.lock_path.exists()
    assert manager.read_info("macos")["lock_id"] == "usurper"


def test_acquire_times_out_on_fresh_marker(lock_dir: Path, backend_name: str) -> None:
    manager = _manager(lock_dir, backend_name, stale_after_seconds=3600)
    plant_marker(backend_name, manager.marker_path("macos"), build_lock_info(age_seconds=5))

    start = time.monotonic()
    with pytest.raises(LockTimeoutError) as exc_info:
        manager.acquire("macos", timeout_seconds=0.3)
    elapsed = time.monotonic() - start

    assert elapsed >= 0.3
    assert exc_info.value.exit_code == 3
    assert exc_info.value.holder_id == "4242@build-agent-7"
    assert "held by 4242@build-agent-7" in str(exc_info.value)
    assert manager.read_info("macos")["lock_id"] == "other-holder-lock"


def test_acquire_reclaims_stale_marker(lock_dir: Path, backend_name: str) -> None:
    manager = _manager(lock_dir, backend_name, stale_after_seconds=60)
    plant_marker(backend_name, manager.marker_path("macos"), build_lock_info(age_seconds=3600))

    start = time.monotonic()
    handle = manager.acquire("macos", timeout_seconds=5)

    assert time.monotonic() - start < 2
    assert manager.read_info("macos")["lock_id"] == handle.lock_id
    handle.release()


def test_marker_younger_than_threshold_is_never_reclaimed(lock_dir: Path) -> None:
    # Age alone decides staleness; the holder pid is never probed.
    manager = _manager(lock_dir, stale_after_seconds=30)
    plant_marker("directory", manager.marker_path("macos"), build_lock_info(age_seconds=20))

    with pytest.raises(LockTimeoutError):
        manager.acquire("macos", timeout_seconds=0.2)

    assert manager.read_info("macos")["lock_id"] == "other-holder-lock"


def test_holder_recorded_threshold_wins(lock_dir: Path) -> None:
    manager = _manager(lock_dir, stale_after_seconds=3600)
    plant_marker(
        "directory",
        manager.marker_path("macos"),
        build_lock_info(age_seconds=20, stale_after_seconds=10),
    )

    handle = manager.acquire("macos", timeout_seconds=1)

    assert manager.read_info("macos")["lock_id"] == handle.lock_id
    handle.release()


def test_acquire_records_stale_threshold(lock_dir: Path) -> None:
    manager = _manager(lock_dir, stale_after_seconds=60)

    with manager.acquire("macos", timeout_seconds=1, stale_after_seconds=15) as handle:
        assert handle.stale_after_seconds == 15
        assert manager.read_info("macos")["stale_after_seconds"] == 15


def test_waiter_acquires_after_holder_releases(lock_dir: Path, backend_name: str) -> None:
    holder = _manager(lock_dir, backend_name).acquire("macos", timeout_seconds=1)
    result: dict[str, object] = {}

    def _wait_for_lock() -> None:
        start = time.monotonic()
        handle = _manager(lock_dir, backend_name).acquire("macos", timeout_seconds=5)
        result["waited"] = time.monotonic() - start
        result["lock_id"] = handle.lock_id
        handle.release()

    waiter = threading.Thread(target=_wait_for_lock)
    waiter.start()
    time.sleep(0.3)
    holder.release()
    waiter.join(timeout=5)

    assert not waiter.is_alive()
    assert result["waited"] >= 0.2
    assert result["lock_id"] != holder.lock_id


def test_mutual_exclusion_under_contention(lock_dir: Path, backend_name: str) -> None:
    inside = 0
    max_inside = 0
    entries = 0
    guard = threading.Lock()
    errors: list[BaseException] = []

    def _worker() -> None:
        nonlocal inside, max_inside, entries
        try:
            with _manager(lock_dir, backend_name, poll_interval=0.005).acquire("macos", timeout_seconds=10) as handle:
                with guard:
                    inside += 1
                    entries += 1
                    max_inside = max(max_inside, inside)
                time.sleep(0.02)
                handle.verify()
                with guard:
                    inside -= 1
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=_worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=15)

    assert errors == []
    assert entries == 6
    assert max_inside == 1
    assert list(lock_dir.iterdir()) == []


def test_hold_releases_on_exception(lock_dir: Path) -> None:
    manager = _manager(lock_dir)

    with pytest.raises(RuntimeError), manager.hold("macos", timeout_seconds=1):
        raise RuntimeError("build step failed")

    assert not manager.marker_path("macos").exists()


def test_heartbeat_refreshes_updated_at(lock_dir: Path, backend_name: str) -> None:
    manager = _manager(lock_dir, backend_name, heartbeat_interval=0.05)
    handle = manager.acquire("macos", timeout_seconds=1)
    first_updated_at = manager.read_info("macos")["updated_at"]

    refreshed = False
    deadline = time.time() + 3
    while time.time() < deadline:
        current = manager.read_info("macos")
        if current is not None and current["updated_at"] != first_updated_at:
            refreshed = True
            break
        time.sleep(0.02)

    handle.release()
    assert refreshed is True
    assert current["acquired_at"] == handle.acquired_at
    assert not handle.lock_path.exists()


def test_repr_reports_state(lock_dir: Path) -> None:
    handle = _manager(lock_dir).acquire("macos", timeout_seconds=1)
    assert "held" in repr(handle)
    handle.release()
    assert "released" in repr(handle)


def test_crashed_holder_with_short_threshold_is_reclaimed_promptly(lock_dir: Path) -> None:
    # A holder that died without releasing, having recorded a 0.5s threshold.
    manager = _manager(lock_dir, stale_after_seconds=3600)
    plant_marker("directory", manager.marker_path("linux"), build_lock_info(stale_after_seconds=0.5))

    start = time.monotonic()
    handle = manager.acquire("linux", timeout_seconds=10)
    elapsed = time.monotonic() - start

    assert 0.4 <= elapsed < 3
    assert manager.read_info("linux")["lock_id"] == handle.lock_id
    handle.release()


def test_lost_holder_heartbeat_never_touches_successor_marker(lock_dir: Path, backend_name: str) -> None:
    first = _manager(lock_dir, backend_name, heartbeat_interval=0.05).acquire("macos", timeout_seconds=1)
    _remove_marker(first.lock_path)
    second = _manager(lock_dir, backend_name).acquire("macos", timeout_seconds=1)

    time.sleep(0.3)

    assert _manager(lock_dir, backend_name).read_info("macos")["lock_id"] == second.lock_id
    second.verify()
    with pytest.raises(LockLostError):
        first.verify()

    first.release()
    second.verify()
    second.release()
