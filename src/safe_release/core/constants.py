"""Constants and default values for Safe Release.

This module centralizes all magic numbers, file naming conventions
and environment variable names used throughout the application.
"""

from typing import Any

# ==================== DISPLAY CONSTANTS ====================

# Width of banner separator lines (used across CLI output)
BANNER_WIDTH: int = 60

# ==================== EXIT CODES ====================

EXIT_SUCCESS: int = 0
EXIT_UNEXPECTED_ERROR: int = 1
EXIT_CONFIG_ERROR: int = 2  # Matches argparse usage errors
EXIT_LOCK_TIMEOUT: int = 3
EXIT_LOCK_LOST: int = 4
EXIT_MERGE_ERROR: int = 5
EXIT_SYNC_ERROR: int = 6
EXIT_INTERRUPTED: int = 130

# ==================== LOCK DEFAULTS ====================

DEFAULT_LOCK_TIMEOUT: float = 300.0  # 5 minutes
DEFAULT_POLL_INTERVAL: float = 1.0
DEFAULT_LOCK_BACKEND: str = "directory"
LOCK_BACKENDS: tuple[str, ...] = ("directory", "lease")

# Marker name: <lock_dir>/release_<resource>.lock
LOCK_MARKER_PREFIX: str = "release_"
LOCK_MARKER_SUFFIX: str = ".lock"
LOCK_INFO_FILENAME: str = "info.json"

# ==================== MANIFEST DEFAULTS ====================

MANIFEST_FILENAME_TEMPLATE: str = "releases_{resource}.json"
RELEASES_KEY: str = "releases"
DEFAULT_RELEASE_KEY_FIELDS: tuple[str, ...] = ("version", "platform")
MERGE_POLICIES: tuple[str, ...] = ("replace", "append")


def default_manifest() -> dict[str, Any]:
    """Return a fresh empty manifest document."""
    return {RELEASES_KEY: []}


# ==================== TRANSPORT DEFAULTS ====================

GSUTIL_TIMEOUT_SECONDS: float = 120.0
REMOTE_SCHEME_GCS: str = "gs://"
REMOTE_SCHEME_FILE: str = "file://"

# ==================== LOGGING DEFAULTS ====================

LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024  # 10MB max per log file
LOG_FILE_BACKUP_COUNT: int = 5  # Number of backup log files to keep
LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# ==================== ENVIRONMENT VARIABLE MAPPING ====================

# Maps PublishConfig field names to the environment variables that back them
ENV_VAR_MAPPING: dict[str, str] = {
    "resource_name": "PLATFORM",
    "remote_path": "CLOUD_STORAGE_PATH",
    "lock_timeout": "RELEASE_LOCK_TIMEOUT",
    "stale_after": "RELEASE_LOCK_STALE_AFTER",
    "lock_dir": "RELEASE_LOCK_DIR",
    "lock_backend": "RELEASE_LOCK_BACKEND",
    "work_dir": "RELEASE_WORK_DIR",
}
