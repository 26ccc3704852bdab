"""Pytest configuration and fixtures for Safe Release tests"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from safe_release.core.config import RetryConfig
from safe_release.core.exceptions import LockLostError, TransportError
from safe_release.core.locks.backends import LockInfo
from safe_release.core.locks.manager import create_lock_backend


class FakeTransport:
    """In-memory object store standing in for cloud storage."""

    name = "fake"

    def __init__(self, objects: dict[str, bytes] | None = None):
        self.objects: dict[str, bytes] = dict(objects or {})
        self.download_failures = 0
        self.upload_failures = 0
        self.downloads: list[str] = []
        self.uploads: list[str] = []

    def download(self, remote_path: str, local_path: Path) -> None:
        self.downloads.append(remote_path)
        if self.download_failures > 0:
            self.download_failures -= 1
            raise TransportError("simulated download failure", operation="download", remote_path=remote_path)
        if remote_path not in self.objects:
            raise TransportError("No URLs matched", operation="download", remote_path=remote_path)
        Path(local_path).write_bytes(self.objects[remote_path])

    def upload(self, local_path: Path, remote_path: str) -> None:
        self.uploads.append(remote_path)
        if self.upload_failures > 0:
            self.upload_failures -= 1
            raise TransportError("simulated upload failure", operation="upload", remote_path=remote_path)
        self.objects[remote_path] = Path(local_path).read_bytes()


class FakeLock:
    """Lock handle double whose verify() fails from the ``fail_on``-th call."""

    def __init__(self, resource_name: str = "macos", fail_on: int | None = None):
        self.resource_name = resource_name
        self.fail_on = fail_on
        self.verify_calls = 0

    def verify(self) -> None:
        self.verify_calls += 1
        if self.fail_on is not None and self.verify_calls >= self.fail_on:
            raise LockLostError(self.resource_name, reason="simulated loss")

    def release(self) -> None:
        pass


def build_lock_info(
    lock_id: str = "other-holder-lock",
    *,
    resource_name: str = "macos",
    holder_id: str = "4242@build-agent-7",
    age_seconds: float = 0.0,
    stale_after_seconds: float | None = None,
    backend: str = "directory",
) -> LockInfo:
    """Metadata for a marker owned by another (possibly long-dead) process."""
    stamp = (datetime.now(UTC) - timedelta(seconds=age_seconds)).isoformat()
    return LockInfo(
        lock_id=lock_id,
        resource_name=resource_name,
        holder_id=holder_id,
        pid=4242,
        host="build-agent-7",
        acquired_at=stamp,
        updated_at=stamp,
        backend=backend,
        stale_after_seconds=stale_after_seconds,
    )


def plant_marker(backend_name: str, marker_path: Path, info: LockInfo) -> None:
    """Create a marker as if another process held it, then let go of our descriptor."""
    handle = create_lock_backend(backend_name).create(marker_path, info)
    assert handle is not None
    if handle.fd is not None:
        os.close(handle.fd)


def overwrite_marker_info(backend_name: str, marker_path: Path, info: LockInfo) -> None:
    payload = json.dumps(info.to_dict()) + "\n"
    if backend_name == "directory":
        (marker_path / "info.json").write_text(payload, encoding="utf-8")
    else:
        marker_path.write_text(payload, encoding="utf-8")


@pytest.fixture(params=["directory", "lease"])
def backend_name(request) -> str:
    return request.param


@pytest.fixture
def lock_dir(tmp_path) -> Path:
    path = tmp_path / "locks"
    path.mkdir()
    return path


@pytest.fixture
def work_dir(tmp_path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_retries=1, base_delay=0.001, max_delay=0.01, jitter=False)


@pytest.fixture
def test_logger() -> logging.Logger:
    return logging.getLogger("safe_release.tests")
