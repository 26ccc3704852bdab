"""Locking subsystem for cross-process release coordination.

This package centralizes lock acquisition/release behavior behind
backend abstractions so the coordinator can use a stable API.
"""

from safe_release.core.locks.backends import (
    DirectoryLockBackend,
    LeaseFileLockBackend,
    LockInfo,
    MarkerState,
)
from safe_release.core.locks.manager import LockHandle, LockManager, create_lock_backend, lock_marker_path

__all__ = [
    "DirectoryLockBackend",
    "LeaseFileLockBackend",
    "LockHandle",
    "LockInfo",
    "LockManager",
    "MarkerState",
    "create_lock_backend",
    "lock_marker_path",
]
