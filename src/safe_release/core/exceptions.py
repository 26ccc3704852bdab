"""Custom exceptions for Safe Release.

Every exception carries an ``exit_code`` so the CLI can report a distinct,
non-zero status for each failure category to the invoking pipeline.
"""

from safe_release.core.constants import (
    EXIT_CONFIG_ERROR,
    EXIT_LOCK_LOST,
    EXIT_LOCK_TIMEOUT,
    EXIT_MERGE_ERROR,
    EXIT_SYNC_ERROR,
    EXIT_UNEXPECTED_ERROR,
)


class SafeReleaseError(Exception):
    """Base exception for all Safe Release errors."""

    exit_code = EXIT_UNEXPECTED_ERROR

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(SafeReleaseError):
    """Exception raised for configuration-related errors.

    Examples:
        - Missing platform / resource identity
        - Non-positive lock timeout
        - Unsupported remote storage scheme
    """

    exit_code = EXIT_CONFIG_ERROR

    def __init__(self, message: str, field: str | None = None, details: str | None = None):
        self.field = field
        super().__init__(message, details)


class LockError(SafeReleaseError):
    """Base exception for release lock failures."""

    def __init__(self, message: str, resource_name: str, lock_path: str | None = None, details: str | None = None):
        self.resource_name = resource_name
        self.lock_path = lock_path
        super().__init__(message, details)


class LockTimeoutError(LockError):
    """Raised when the lock could not be acquired within the allotted wait.

    Attributes:
        resource_name: Resource whose lock is contended
        timeout_seconds: How long acquisition waited
        holder_id: Holder recorded in the marker, if readable
        acquired_at: When the current holder acquired the lock, if readable
    """

    exit_code = EXIT_LOCK_TIMEOUT

    def __init__(
        self,
        resource_name: str,
        timeout_seconds: float,
        lock_path: str | None = None,
        holder_id: str | None = None,
        acquired_at: str | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.holder_id = holder_id
        self.acquired_at = acquired_at

        message = f"Failed to acquire release lock for '{resource_name}' after {timeout_seconds:g} seconds"
        details_parts = []
        if holder_id:
            details_parts.append(f"held by {holder_id}")
        if acquired_at:
            details_parts.append(f"since {acquired_at}")
        details = ", ".join(details_parts) if details_parts else None
        super().__init__(message, resource_name, lock_path=lock_path, details=details)


class LockLostError(LockError):
    """Raised when lock verification fails inside a critical section.

    Ownership can be lost when another participant reclaimed the marker as
    stale or when the marker was removed externally.
    """

    exit_code = EXIT_LOCK_LOST

    def __init__(self, resource_name: str, lock_path: str | None = None, reason: str | None = None):
        self.reason = reason
        super().__init__(
            f"Release lock for '{resource_name}' lost during operation",
            resource_name,
            lock_path=lock_path,
            details=reason,
        )


class TransportError(SafeReleaseError):
    """Exception raised when a remote transfer fails.

    Attributes:
        operation: "download" or "upload"
        remote_path: Remote object involved in the transfer
        original_error: Underlying exception, if any
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        remote_path: str | None = None,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.operation = operation
        self.remote_path = remote_path
        self.original_error = original_error
        super().__init__(message, details)

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            parts.append(f"during {self.operation}")
        if self.remote_path:
            parts.append(self.remote_path)
        if self.details:
            parts.append(self.details)
        return " - ".join(parts)


class ManifestError(SafeReleaseError):
    """Base exception for manifest read/merge/write failures."""

    def __init__(self, message: str, manifest_path: str | None = None, details: str | None = None):
        self.manifest_path = manifest_path
        super().__init__(message, details)


class MergeError(ManifestError):
    """Raised when the merge function rejects the combination.

    No write has happened when this is raised.
    """

    exit_code = EXIT_MERGE_ERROR


class ManifestFormatError(ManifestError):
    """Raised when a manifest document is not a JSON object with a ``releases`` list."""

    exit_code = EXIT_MERGE_ERROR


class SyncError(ManifestError):
    """Raised when the upload of a committed local manifest fails.

    The local manifest has been restored from its backup and the remote
    copy was left untouched, so the update is not committed.
    """

    exit_code = EXIT_SYNC_ERROR

    def __init__(
        self,
        message: str,
        manifest_path: str | None = None,
        remote_path: str | None = None,
        restored: bool = False,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.remote_path = remote_path
        self.restored = restored
        self.original_error = original_error
        super().__init__(message, manifest_path=manifest_path, details=details)
