"""Configuration dataclasses for Safe Release.

These dataclasses centralize all configuration options for type safety
and easy testing. They can be created from command-line arguments (with
environment variable fallbacks) or used directly in code.
"""

from __future__ import annotations

import argparse
import math
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from safe_release.core.constants import (
    DEFAULT_LOCK_BACKEND,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    ENV_VAR_MAPPING,
    LOCK_BACKENDS,
    LOG_LEVELS,
    MERGE_POLICIES,
    REMOTE_SCHEME_FILE,
    REMOTE_SCHEME_GCS,
)
from safe_release.core.exceptions import ConfigurationError


@dataclass
class RetryConfig:
    """Configuration for transfer retries with exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 2)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay cap in seconds (default: 30.0)
        exponential_base: Multiplier for exponential backoff (default: 2)
        jitter: Add randomization to delays (default: True)
    """

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: int = 2
    jitter: bool = True


@dataclass
class LogConfig:
    """Configuration for logging behavior.

    Attributes:
        level: Logging level string (default: "INFO")
        format: "text" or "json" (default: "text")
        log_dir: Directory for rotating log files; None logs to console only
    """

    level: str = "INFO"
    format: str = "text"
    log_dir: str | None = None


@dataclass
class LockConfig:
    """Configuration for the release lock.

    Attributes:
        lock_dir: Directory holding lock markers (default: system temp dir)
        timeout_seconds: Max wait before giving up (default: 300)
        stale_after_seconds: Marker age beyond which it is presumed abandoned.
            None means "same as timeout_seconds".
        poll_interval: Seconds between acquisition attempts (default: 1.0)
        backend: "directory" (mkdir marker) or "lease" (exclusive file marker)
        heartbeat_interval: Seconds between holder heartbeats; 0 disables
    """

    lock_dir: str = field(default_factory=tempfile.gettempdir)
    timeout_seconds: float = DEFAULT_LOCK_TIMEOUT
    stale_after_seconds: float | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    backend: str = DEFAULT_LOCK_BACKEND
    heartbeat_interval: float = 0.0

    @property
    def effective_stale_after(self) -> float:
        if self.stale_after_seconds is None:
            return self.timeout_seconds
        return self.stale_after_seconds


@dataclass
class PublishConfig:
    """Master configuration for a release publication.

    Attributes:
        resource_name: Platform / target tag the release is published for
        remote_path: Remote storage prefix (gs://bucket/dir, file:// URL or a
            mounted directory). None means local-only mode.
        work_dir: Directory holding the local working copy of the manifest
        merge_policy: "replace" (insert-or-replace) or "append" (append-if-absent)
        lock: Lock configuration
        retry: Transfer retry configuration
        log: Logging configuration
    """

    resource_name: str = ""
    remote_path: str | None = None
    work_dir: str = "."
    merge_policy: str = "replace"
    lock: LockConfig = field(default_factory=LockConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    log: LogConfig = field(default_factory=LogConfig)

    def validate(self) -> None:
        """Fail fast on missing or unrecognized configuration.

        Raises:
            ConfigurationError: If any option is missing or invalid
        """
        if not self.resource_name or not self.resource_name.strip():
            raise ConfigurationError(
                "PLATFORM environment variable not set",
                field="resource_name",
                details="pass --platform or set PLATFORM",
            )
        if not _is_positive_number(self.lock.timeout_seconds):
            raise ConfigurationError(
                f"Lock timeout must be a positive number, got {self.lock.timeout_seconds!r}", field="lock_timeout"
            )
        if not _is_positive_number(self.lock.effective_stale_after):
            raise ConfigurationError(
                f"Stale threshold must be a positive number, got {self.lock.stale_after_seconds!r}",
                field="stale_after",
            )
        if not _is_positive_number(self.lock.poll_interval):
            raise ConfigurationError(
                f"Poll interval must be a positive number, got {self.lock.poll_interval!r}", field="poll_interval"
            )
        if self.lock.heartbeat_interval < 0:
            raise ConfigurationError("Heartbeat interval cannot be negative", field="heartbeat_interval")
        if self.retry.max_retries < 0:
            raise ConfigurationError("Max retries cannot be negative", field="max_retries")
        if self.lock.backend not in LOCK_BACKENDS:
            raise ConfigurationError(
                f"Unknown lock backend '{self.lock.backend}'",
                field="lock_backend",
                details=f"valid backends: {', '.join(LOCK_BACKENDS)}",
            )
        if self.merge_policy not in MERGE_POLICIES:
            raise ConfigurationError(
                f"Unknown merge policy '{self.merge_policy}'",
                field="merge_policy",
                details=f"valid policies: {', '.join(MERGE_POLICIES)}",
            )
        if self.log.level.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"Invalid log level '{self.log.level}'", field="log_level")
        if self.remote_path is not None:
            _validate_remote_path(self.remote_path)

    @property
    def local_only(self) -> bool:
        return self.remote_path is None

    @classmethod
    def from_args(cls, args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> PublishConfig:
        """Create configuration from parsed command-line arguments.

        Flags take priority; unset flags fall back to the environment
        variables listed in ``ENV_VAR_MAPPING``.

        Raises:
            ConfigurationError: If an environment value cannot be parsed
        """
        env = os.environ if environ is None else environ

        def _pick(name: str) -> Any:
            value = getattr(args, name, None)
            if value is not None:
                return value
            raw = env.get(ENV_VAR_MAPPING[name], "").strip()
            return raw or None

        lock = LockConfig(
            timeout_seconds=_as_float(_pick("lock_timeout"), "lock_timeout", DEFAULT_LOCK_TIMEOUT),
            stale_after_seconds=_as_float(_pick("stale_after"), "stale_after", None),
            poll_interval=_as_float(getattr(args, "poll_interval", None), "poll_interval", DEFAULT_POLL_INTERVAL),
            backend=(_pick("lock_backend") or DEFAULT_LOCK_BACKEND).strip().lower(),
            heartbeat_interval=_as_float(getattr(args, "heartbeat_interval", None), "heartbeat_interval", 0.0),
        )
        lock_dir = _pick("lock_dir")
        if lock_dir:
            lock.lock_dir = str(lock_dir)

        retry = RetryConfig()
        max_retries = getattr(args, "max_retries", None)
        if max_retries is not None:
            retry.max_retries = max_retries

        return cls(
            resource_name=(_pick("resource_name") or "").strip(),
            remote_path=_pick("remote_path"),
            work_dir=str(_pick("work_dir") or "."),
            merge_policy=getattr(args, "merge_policy", None) or "replace",
            lock=lock,
            retry=retry,
            log=LogConfig(
                level=getattr(args, "log_level", None) or env.get("LOG_LEVEL", "INFO"),
                format=getattr(args, "log_format", None) or "text",
                log_dir=getattr(args, "log_dir", None),
            ),
        )


def _is_positive_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def _as_float(value: Any, field_name: str, default: float | None) -> float | None:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {field_name}: {value!r}", field=field_name) from e


def _validate_remote_path(remote_path: str) -> None:
    if not remote_path.strip():
        raise ConfigurationError("Remote storage path cannot be empty", field="remote_path")
    if remote_path.startswith((REMOTE_SCHEME_GCS, REMOTE_SCHEME_FILE)):
        return
    if "://" in remote_path:
        scheme = remote_path.split("://", 1)[0]
        raise ConfigurationError(
            f"Unsupported remote storage scheme '{scheme}://'",
            field="remote_path",
            details="use gs://, file:// or a mounted directory path",
        )
    if not Path(remote_path).is_absolute():
        raise ConfigurationError(
            f"Remote storage directory must be an absolute path, got '{remote_path}'", field="remote_path"
        )
