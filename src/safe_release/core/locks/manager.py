"""Lock manager orchestrating backend selection, polling and lifecycle."""

from __future__ import annotations

import atexit
import logging
import os
import re
import socket
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from types import TracebackType

from safe_release.core.colors import SUCCESS_STATUS
from safe_release.core.constants import (
    DEFAULT_LOCK_BACKEND,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    LOCK_MARKER_PREFIX,
    LOCK_MARKER_SUFFIX,
)
from safe_release.core.exceptions import ConfigurationError, LockLostError, LockTimeoutError
from safe_release.core.locks.backends import (
    DirectoryLockBackend,
    LeaseFileLockBackend,
    LockBackend,
    LockInfo,
    MarkerHandle,
    MarkerState,
    current_holder_id,
    utcnow_iso,
)
from safe_release.core.logging import with_log_context

# Log a "still waiting" line at INFO at most this often while polling
_WAIT_LOG_INTERVAL_SECONDS = 30.0


def create_lock_backend(backend_name: str | None = None) -> LockBackend:
    """Create lock backend from an explicit name ("directory" or "lease")."""
    requested = (backend_name or DEFAULT_LOCK_BACKEND).strip().lower()
    if requested == "directory":
        return DirectoryLockBackend()
    if requested == "lease":
        return LeaseFileLockBackend()
    raise ConfigurationError(f"Unknown lock backend '{requested}'", field="lock_backend")


def lock_marker_path(lock_dir: Path | str, resource_name: str) -> Path:
    """Marker path for a resource; unsafe filename characters become ``_``."""
    safe_name = re.sub(r"[^a-zA-Z0-9_.-]", "_", resource_name.strip())
    return Path(lock_dir) / f"{LOCK_MARKER_PREFIX}{safe_name}{LOCK_MARKER_SUFFIX}"


class LockHandle:
    """Ownership of a named release lock.

    Usage:
        with manager.acquire("macos", timeout_seconds=300) as lock:
            lock.verify()
            # ... critical section ...

    Leaving the ``with`` block releases the lock on every exit path,
    including exceptions and KeyboardInterrupt.
    """

    def __init__(
        self,
        manager: LockManager,
        marker: MarkerHandle,
        info: LockInfo,
        timeout_seconds: float,
    ):
        self._manager = manager
        self._marker = marker
        self._info = info
        self.timeout_seconds = timeout_seconds
        self.released = False
        self._lost_reason: str | None = None
        self._state_lock = threading.RLock()
        self._heartbeat_stop = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None

    @property
    def resource_name(self) -> str:
        return self._info.resource_name

    @property
    def holder_id(self) -> str:
        return self._info.holder_id

    @property
    def lock_id(self) -> str:
        return self._info.lock_id

    @property
    def acquired_at(self) -> str:
        return self._info.acquired_at

    @property
    def stale_after_seconds(self) -> float | None:
        return self._info.stale_after_seconds

    @property
    def lock_path(self) -> Path:
        return self._marker.marker_path

    @property
    def lost(self) -> bool:
        return self._lost_reason is not None

    def verify(self) -> None:
        """Raise LockLostError unless the marker still records this holder."""
        self._manager.verify(self)

    def release(self) -> None:
        """Release the lock. Safe to call more than once."""
        self._manager.release(self)

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.released else ("lost" if self.lost else "held")
        return f"LockHandle(resource_name={self.resource_name!r}, holder_id={self.holder_id!r}, {state})"


class LockManager:
    """Blocking, staleness-aware manager for named release locks.

    Args:
        lock_dir: Directory holding the lock markers
        stale_after_seconds: Default age beyond which an unreleased marker is
            presumed abandoned. A holder's own recorded threshold wins.
        poll_interval: Seconds to sleep between acquisition attempts
        backend_name: "directory" (default) or "lease"
        heartbeat_interval: Seconds between ``updated_at`` refreshes while a
            lock is held. 0 disables the heartbeat, so marker age is measured
            from acquisition time.
        logger: Logger for progress and diagnostics
    """

    def __init__(
        self,
        lock_dir: Path | str,
        *,
        stale_after_seconds: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        backend_name: str | None = None,
        heartbeat_interval: float = 0.0,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.lock_dir = Path(lock_dir)
        self.stale_after_seconds = stale_after_seconds
        self.poll_interval = max(0.01, poll_interval)
        self.heartbeat_interval = max(0.0, heartbeat_interval)
        self.backend = create_lock_backend(backend_name)
        self.logger = logger or logging.getLogger(__name__)

    def marker_path(self, resource_name: str) -> Path:
        return lock_marker_path(self.lock_dir, resource_name)

    def acquire(
        self,
        resource_name: str,
        timeout_seconds: float = DEFAULT_LOCK_TIMEOUT,
        *,
        stale_after_seconds: float | None = None,
    ) -> LockHandle:
        """Acquire the lock for ``resource_name``, waiting up to ``timeout_seconds``.

        Polls every ``poll_interval`` seconds. A marker older than its stale
        threshold is reclaimed while polling; once the timeout elapses a final
        stale check is made and creation is retried exactly once.

        Raises:
            LockTimeoutError: If the lock could not be acquired in time
            OSError: If the marker could not be created for reasons other than contention
        """
        stale_after = stale_after_seconds if stale_after_seconds is not None else self.stale_after_seconds
        marker_path = self.marker_path(resource_name)
        log = with_log_context(self.logger, resource_name=resource_name)
        log.info(f"Attempting to acquire lock: {marker_path}")

        start = time.monotonic()
        deadline = start + max(0.0, timeout_seconds)
        last_wait_log: float | None = None

        while True:
            handle = self._try_create(resource_name, marker_path, stale_after, timeout_seconds)
            if handle is not None:
                log.info("Lock acquired successfully", extra={"status": SUCCESS_STATUS, "lock_id": handle.lock_id})
                return handle

            if self._reclaim_if_stale(marker_path, stale_after, log):
                continue

            now = time.monotonic()
            if now >= deadline:
                break
            if last_wait_log is None or now - last_wait_log >= _WAIT_LOG_INTERVAL_SECONDS:
                log.info(f"Lock held by another process, waiting... ({now - start:.0f}s/{timeout_seconds:g}s)")
                last_wait_log = now
            time.sleep(min(self.poll_interval, max(0.0, deadline - now)))

        log.error(f"Failed to acquire lock after {timeout_seconds:g} seconds")
        if self._reclaim_if_stale(marker_path, stale_after, log):
            handle = self._try_create(resource_name, marker_path, stale_after, timeout_seconds)
            if handle is not None:
                log.info(
                    "Acquired lock after removing stale lock",
                    extra={"status": SUCCESS_STATUS, "lock_id": handle.lock_id},
                )
                return handle

        holder = self.backend.read_info(marker_path)
        raise LockTimeoutError(
            resource_name,
            timeout_seconds,
            lock_path=str(marker_path),
            holder_id=holder.holder_id if holder else None,
            acquired_at=holder.acquired_at if holder else None,
        )

    @contextmanager
    def hold(self, resource_name: str, timeout_seconds: float = DEFAULT_LOCK_TIMEOUT) -> Iterator[LockHandle]:
        """Scoped acquisition: the lock is released on every exit path."""
        handle = self.acquire(resource_name, timeout_seconds)
        try:
            yield handle
        finally:
            handle.release()

    def verify(self, handle: LockHandle) -> None:
        """Confirm ``handle`` still owns its marker.

        Raises:
            LockLostError: If the handle was released, its heartbeat failed,
                or the marker is gone or records another holder
        """
        reason = self._ownership_problem(handle)
        if reason is None:
            return
        with_log_context(self.logger, resource_name=handle.resource_name).error(f"Lock lost during operation! {reason}")
        raise LockLostError(handle.resource_name, lock_path=str(handle.lock_path), reason=reason)

    def release(self, handle: LockHandle) -> None:
        """Release ``handle`` if still held. Idempotent; never removes another holder's marker."""
        with handle._state_lock:
            if handle.released:
                return
            handle.released = True
        self._stop_heartbeat(handle)
        atexit.unregister(handle.release)

        log = with_log_context(self.logger, resource_name=handle.resource_name, lock_id=handle.lock_id)
        log.info(f"Releasing lock: {handle.lock_path}")
        try:
            removed = self.backend.remove(handle._marker)
        except OSError as e:
            log.warning(f"Could not remove lock marker {handle.lock_path}: {e}")
            return
        if removed:
            log.info("Lock released", extra={"status": SUCCESS_STATUS})
        else:
            log.warning("Lock marker no longer belonged to this process; left untouched")

    def read_info(self, resource_name: str) -> dict | None:
        """Read lock metadata for diagnostics. Never a basis for decisions."""
        info = self.backend.read_info(self.marker_path(resource_name))
        if info is None:
            return None
        return info.to_dict()

    def _try_create(
        self,
        resource_name: str,
        marker_path: Path,
        stale_after: float,
        timeout_seconds: float,
    ) -> LockHandle | None:
        now = utcnow_iso()
        info = LockInfo(
            lock_id=str(uuid.uuid4()),
            resource_name=resource_name,
            holder_id=current_holder_id(),
            pid=os.getpid(),
            host=socket.gethostname(),
            acquired_at=now,
            updated_at=now,
            backend=self.backend.name,
            stale_after_seconds=stale_after,
        )
        marker = self.backend.create(marker_path, info)
        if marker is None:
            return None

        handle = LockHandle(self, marker, info, timeout_seconds)
        atexit.register(handle.release)
        self._start_heartbeat_if_needed(handle)
        return handle

    def _reclaim_if_stale(
        self, marker_path: Path, stale_after: float, log: logging.Logger | logging.LoggerAdapter
    ) -> bool:
        def _is_stale(state: MarkerState) -> bool:
            return state.is_stale(stale_after)

        state = self.backend.inspect(marker_path)
        if state is None or not _is_stale(state):
            return False

        age = state.age_seconds() or 0.0
        holder = state.info.holder_id if state.info else "unknown holder"
        log.warning(f"Lock appears stale ({age:.0f}s old, {holder}), forcefully removing...")
        try:
            reclaimed = self.backend.reclaim(marker_path, _is_stale)
        except OSError as e:
            log.warning(f"Could not remove stale lock {marker_path}: {e}")
            return False
        if not reclaimed:
            log.info("Stale lock was replaced by another holder before it could be removed")
        return reclaimed

    def _ownership_problem(self, handle: LockHandle) -> str | None:
        if handle.released:
            return "lock was already released"
        if handle._lost_reason is not None:
            return handle._lost_reason
        info = self.backend.read_info(handle.lock_path)
        if info is None:
            if self.backend.inspect(handle.lock_path) is None:
                return f"lock marker {handle.lock_path} no longer exists"
            return f"lock marker {handle.lock_path} has unreadable metadata"
        if info.lock_id != handle.lock_id or info.holder_id != handle.holder_id:
            return f"lock holder mismatch: expected {handle.holder_id}, found {info.holder_id}"
        return None

    def _start_heartbeat_if_needed(self, handle: LockHandle) -> None:
        if self.heartbeat_interval <= 0:
            return
        handle._heartbeat_stop.clear()
        handle._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            args=(handle,),
            daemon=True,
            name=f"lock-heartbeat-{handle.lock_path.name}",
        )
        handle._heartbeat_thread.start()

    def _stop_heartbeat(self, handle: LockHandle) -> None:
        handle._heartbeat_stop.set()
        thread = handle._heartbeat_thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        handle._heartbeat_thread = None

    def _heartbeat_loop(self, handle: LockHandle) -> None:
        while not handle._heartbeat_stop.wait(self.heartbeat_interval):
            with handle._state_lock:
                if handle.released:
                    return
                refreshed = replace(handle._info, updated_at=utcnow_iso())
                handle._info = refreshed
            try:
                self.backend.write_info(handle._marker, refreshed)
            except OSError as e:
                self.logger.error(f"Lock heartbeat failed for {handle.lock_path}: {e}")
                handle._lost_reason = f"heartbeat metadata write failed: {e}"
                return
