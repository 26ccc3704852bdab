"""Core module - Foundation components shared by the lock, manifest and sync layers.

This module provides the basic building blocks used throughout the application:
- Version information
- Custom exceptions
- Configuration dataclasses
- Constants and defaults
- Console colors
"""

from safe_release.core.version import __version__

from safe_release.core.exceptions import (
    SafeReleaseError,
    ConfigurationError,
    LockError,
    LockTimeoutError,
    LockLostError,
    TransportError,
    ManifestError,
    MergeError,
    ManifestFormatError,
    SyncError,
)

from safe_release.core.config import (
    RetryConfig,
    LogConfig,
    LockConfig,
    PublishConfig,
)

from safe_release.core.constants import (
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    ENV_VAR_MAPPING,
    LOCK_BACKENDS,
    MERGE_POLICIES,
    default_manifest,
)

from safe_release.core.colors import ConsoleColors

__all__ = [
    # Version
    '__version__',
    # Exceptions
    'SafeReleaseError',
    'ConfigurationError',
    'LockError',
    'LockTimeoutError',
    'LockLostError',
    'TransportError',
    'ManifestError',
    'MergeError',
    'ManifestFormatError',
    'SyncError',
    # Config dataclasses
    'RetryConfig',
    'LogConfig',
    'LockConfig',
    'PublishConfig',
    # Constants
    'DEFAULT_LOCK_TIMEOUT',
    'DEFAULT_POLL_INTERVAL',
    'ENV_VAR_MAPPING',
    'LOCK_BACKENDS',
    'MERGE_POLICIES',
    'default_manifest',
    # Colors
    'ConsoleColors',
]
