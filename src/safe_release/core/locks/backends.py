"""Lock marker backend implementations.

Design principles:
- Mutual exclusion comes only from an atomic create-if-absent primitive
  (``mkdir`` for the directory backend, ``O_CREAT | O_EXCL`` for the lease
  backend). There is never a separate existence check before creation.
- Metadata lives inside the marker and identifies the holder. It decides
  ownership checks (verify/release) and marker age (staleness).
- Removal goes through an atomic rename to a private tombstone name and a
  re-check of the tombstone, so a waiter never deletes a marker that was
  re-created by someone else after it looked.
"""

from __future__ import annotations

import contextlib
import json
import math
import os
import shutil
import socket
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from safe_release.core.constants import LOCK_INFO_FILENAME

# os.replace is not registered in supports_dir_fd; os.rename is (renameat).
_DIR_FD_SUPPORTED = os.open in os.supports_dir_fd and os.rename in os.supports_dir_fd


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def current_holder_id() -> str:
    """Opaque process identity: ``<pid>@<host>``."""
    return f"{os.getpid()}@{socket.gethostname()}"


def _write_all(fd: int, payload: bytes) -> None:
    """Write complete payload to fd, handling short writes."""
    total_written = 0
    while total_written < len(payload):
        written = os.write(fd, payload[total_written:])
        if written <= 0:
            raise OSError("short write while persisting lock metadata")
        total_written += written


def _encode_info(info: LockInfo) -> bytes:
    return (json.dumps(info.to_dict(), sort_keys=True) + "\n").encode("utf-8")


def _write_info_fd(fd: int, info: LockInfo) -> None:
    os.lseek(fd, 0, os.SEEK_SET)
    os.ftruncate(fd, 0)
    _write_all(fd, _encode_info(info))
    os.fsync(fd)


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class LockInfo:
    """Holder metadata persisted inside a lock marker."""

    lock_id: str
    resource_name: str
    holder_id: str
    pid: int
    host: str
    acquired_at: str
    updated_at: str
    backend: str
    stale_after_seconds: float | None = None
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockInfo | None:
        try:
            stale_after = data.get("stale_after_seconds")
            if stale_after is not None:
                stale_after = float(stale_after)
                if not math.isfinite(stale_after) or stale_after <= 0:
                    stale_after = None
            return cls(
                lock_id=str(data["lock_id"]),
                resource_name=str(data.get("resource_name", "")),
                holder_id=str(data["holder_id"]),
                pid=int(data.get("pid", 0)),
                host=str(data.get("host", "")),
                acquired_at=str(data["acquired_at"]),
                updated_at=str(data.get("updated_at", data["acquired_at"])),
                backend=str(data.get("backend", "")),
                stale_after_seconds=stale_after,
                version=int(data.get("version", 1)),
            )
        except (KeyError, TypeError, ValueError, OverflowError):
            return None

    def reference_time(self) -> datetime | None:
        """Last moment the holder was known alive (heartbeat or acquisition)."""
        return _parse_iso(self.updated_at) or _parse_iso(self.acquired_at)


@dataclass
class MarkerState:
    """Snapshot of a marker as seen by a non-owner."""

    info: LockInfo | None
    mtime: float | None

    def age_seconds(self, now: datetime | None = None) -> float | None:
        now = now or datetime.now(UTC)
        reference = self.info.reference_time() if self.info is not None else None
        if reference is not None:
            return (now - reference).total_seconds()
        if self.mtime is not None:
            return now.timestamp() - self.mtime
        return None

    def is_stale(self, default_stale_after: float, now: datetime | None = None) -> bool:
        """True once the marker is older than the holder's own stale threshold.

        The threshold recorded by the holder wins over the caller's default.
        """
        age = self.age_seconds(now)
        if age is None:
            return False
        threshold = default_stale_after
        if self.info is not None and self.info.stale_after_seconds is not None:
            threshold = self.info.stale_after_seconds
        return age > threshold


@dataclass
class MarkerHandle:
    marker_path: Path
    lock_id: str
    fd: int | None = None
    closed: bool = False


class LockBackend(Protocol):
    """Backend abstraction for marker creation, inspection and removal."""

    name: str

    def create(self, marker_path: Path, info: LockInfo) -> MarkerHandle | None:
        """Atomically create the marker. Returns None if it already exists."""

    def read_info(self, marker_path: Path) -> LockInfo | None:
        """Read holder metadata, if present and well formed."""

    def inspect(self, marker_path: Path) -> MarkerState | None:
        """Return marker metadata and mtime, or None if no marker exists."""

    def write_info(self, handle: MarkerHandle, info: LockInfo) -> None:
        """Refresh metadata for a held marker (heartbeat)."""

    def remove(self, handle: MarkerHandle) -> bool:
        """Remove the marker if it is still owned by handle."""

    def reclaim(self, marker_path: Path, is_stale: Callable[[MarkerState], bool]) -> bool:
        """Remove a marker judged stale. Returns True if a stale marker was removed."""


class _MarkerBackend:
    """Shared tombstone-based removal for marker backends."""

    name = "base"

    def _marker_mtime(self, path: Path) -> float | None:
        try:
            return path.stat().st_mtime
        except OSError:
            return None

    def _info_path(self, marker_path: Path) -> Path:
        raise NotImplementedError

    def read_info(self, marker_path: Path) -> LockInfo | None:
        try:
            with open(self._info_path(marker_path), encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            return None
        if not isinstance(data, dict):
            return None
        return LockInfo.from_dict(data)

    def inspect(self, marker_path: Path) -> MarkerState | None:
        mtime = self._marker_mtime(marker_path)
        if mtime is None:
            return None
        return MarkerState(info=self.read_info(marker_path), mtime=mtime)

    def _restore(self, tombstone: Path, marker_path: Path) -> bool:
        raise NotImplementedError

    def _destroy(self, tombstone: Path) -> None:
        raise NotImplementedError

    def _detach(self, marker_path: Path, predicate: Callable[[MarkerState], bool]) -> bool:
        """Rename the marker aside, re-check it, then delete or put it back."""
        tombstone = marker_path.with_name(f"{marker_path.name}.{uuid.uuid4().hex}.removing")
        try:
            os.rename(marker_path, tombstone)
        except FileNotFoundError:
            return False

        state = MarkerState(info=self.read_info(tombstone), mtime=self._marker_mtime(tombstone))
        if predicate(state):
            self._destroy(tombstone)
            return True

        # Someone re-created the marker between our check and the rename.
        if not self._restore(tombstone, marker_path):
            self._destroy(tombstone)
        return False

    def reclaim(self, marker_path: Path, is_stale: Callable[[MarkerState], bool]) -> bool:
        state = self.inspect(marker_path)
        if state is None or not is_stale(state):
            return False
        return self._detach(marker_path, is_stale)

    def remove(self, handle: MarkerHandle) -> bool:
        if handle.closed:
            return False
        try:
            return self._detach(
                handle.marker_path,
                lambda state: state.info is not None and state.info.lock_id == handle.lock_id,
            )
        finally:
            if handle.fd is not None:
                with contextlib.suppress(OSError):
                    os.close(handle.fd)
            handle.closed = True


class DirectoryLockBackend(_MarkerBackend):
    """Marker is a directory created with ``mkdir``; metadata in ``info.json``.

    Works on any filesystem where ``mkdir`` is atomic, including network
    mounts shared between build hosts.
    """

    name = "directory"

    def _info_path(self, marker_path: Path) -> Path:
        return marker_path / LOCK_INFO_FILENAME

    def create(self, marker_path: Path, info: LockInfo) -> MarkerHandle | None:
        marker_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.mkdir(marker_path, 0o700)
        except FileExistsError:
            return None

        handle = MarkerHandle(marker_path=marker_path, lock_id=info.lock_id)
        try:
            if _DIR_FD_SUPPORTED:
                handle.fd = os.open(marker_path, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
            self._replace_info(handle, info)
        except OSError:
            if handle.fd is not None:
                with contextlib.suppress(OSError):
                    os.close(handle.fd)
            handle.closed = True
            shutil.rmtree(marker_path, ignore_errors=True)
            raise
        return handle

    def write_info(self, handle: MarkerHandle, info: LockInfo) -> None:
        if handle.closed:
            raise OSError("lock handle is closed")
        if handle.fd is None:
            current = self.read_info(handle.marker_path)
            if current is None or current.lock_id != handle.lock_id:
                raise OSError(f"lock marker {handle.marker_path} no longer belongs to this holder")
        self._replace_info(handle, info)

    def _replace_info(self, handle: MarkerHandle, info: LockInfo) -> None:
        tmp_name = f".{LOCK_INFO_FILENAME}.{uuid.uuid4().hex}.tmp"
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        if handle.fd is not None:
            # Writes follow the marker even if it was renamed aside, never a successor's marker.
            fd = os.open(tmp_name, flags, 0o600, dir_fd=handle.fd)
            try:
                _write_all(fd, _encode_info(info))
                os.fsync(fd)
            finally:
                os.close(fd)
            os.rename(tmp_name, LOCK_INFO_FILENAME, src_dir_fd=handle.fd, dst_dir_fd=handle.fd)
            return

        tmp_path = handle.marker_path / tmp_name
        fd = os.open(tmp_path, flags, 0o600)
        try:
            _write_all(fd, _encode_info(info))
            os.fsync(fd)
        finally:
            os.close(fd)
        os.replace(tmp_path, self._info_path(handle.marker_path))

    def _restore(self, tombstone: Path, marker_path: Path) -> bool:
        try:
            os.rename(tombstone, marker_path)
            return True
        except OSError:
            return False

    def _destroy(self, tombstone: Path) -> None:
        shutil.rmtree(tombstone, ignore_errors=True)


class LeaseFileLockBackend(_MarkerBackend):
    """Marker is a regular file created with ``O_CREAT | O_EXCL``.

    The file content is the holder metadata. The descriptor stays open for
    the lifetime of the lock so heartbeats rewrite the holder's own file.
    """

    name = "lease"

    def _info_path(self, marker_path: Path) -> Path:
        return marker_path

    def create(self, marker_path: Path, info: LockInfo) -> MarkerHandle | None:
        marker_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(marker_path), os.O_CREAT | os.O_EXCL | os.O_RDWR, 0o600)
        except FileExistsError:
            return None

        try:
            _write_info_fd(fd, info)
        except OSError:
            with contextlib.suppress(OSError):
                os.close(fd)
            with contextlib.suppress(OSError):
                marker_path.unlink()
            raise
        return MarkerHandle(marker_path=marker_path, lock_id=info.lock_id, fd=fd)

    def write_info(self, handle: MarkerHandle, info: LockInfo) -> None:
        if handle.closed or handle.fd is None:
            raise OSError("lock handle is closed")
        _write_info_fd(handle.fd, info)

    def _restore(self, tombstone: Path, marker_path: Path) -> bool:
        # link() fails if the path exists, unlike rename() which would clobber it.
        try:
            os.link(tombstone, marker_path)
        except OSError:
            return False
        with contextlib.suppress(OSError):
            tombstone.unlink()
        return True

    def _destroy(self, tombstone: Path) -> None:
        with contextlib.suppress(FileNotFoundError):
            tombstone.unlink()
