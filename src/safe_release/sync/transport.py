"""Remote storage transports for the release manifest.

A transport is a synchronous download/upload pair. It fails closed: any
error raises ``TransportError`` and never leaves a partially written
object at the destination.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlparse

from safe_release.core.constants import GSUTIL_TIMEOUT_SECONDS, REMOTE_SCHEME_FILE, REMOTE_SCHEME_GCS
from safe_release.core.exceptions import ConfigurationError, TransportError


class RemoteTransport(Protocol):
    """Pluggable object-storage client used by ManifestStore."""

    name: str

    def download(self, remote_path: str, local_path: Path) -> None:
        """Copy the remote object to ``local_path``. Raises TransportError."""

    def upload(self, local_path: Path, remote_path: str) -> None:
        """Copy ``local_path`` to the remote object. Raises TransportError."""


def join_remote(base: str, name: str) -> str:
    """Join a remote prefix and an object name with exactly one separator."""
    return f"{base.rstrip('/')}/{name}"


def _file_url_to_path(remote_path: str) -> Path:
    if remote_path.startswith(REMOTE_SCHEME_FILE):
        return Path(unquote(urlparse(remote_path).path))
    return Path(remote_path)


class LocalDirectoryTransport:
    """Remote storage mounted as a directory (or addressed with ``file://``)."""

    name = "directory"

    def download(self, remote_path: str, local_path: Path) -> None:
        source = _file_url_to_path(remote_path)
        try:
            shutil.copyfile(source, local_path)
        except OSError as e:
            raise TransportError(
                "Could not download from remote storage",
                operation="download",
                remote_path=remote_path,
                details=str(e),
                original_error=e,
            ) from e

    def upload(self, local_path: Path, remote_path: str) -> None:
        target = _file_url_to_path(remote_path)
        tmp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, tmp_path)
            os.replace(tmp_path, target)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise TransportError(
                "Failed to upload to remote storage",
                operation="upload",
                remote_path=remote_path,
                details=str(e),
                original_error=e,
            ) from e


class GsutilTransport:
    """Google Cloud Storage through the ``gsutil`` command-line tool.

    ``gsutil cp`` replaces an object in a single step, so a failed upload
    leaves the previous object in place.
    """

    name = "gsutil"

    def __init__(
        self,
        executable: str = "gsutil",
        timeout_seconds: float = GSUTIL_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ):
        self.executable = executable
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    def download(self, remote_path: str, local_path: Path) -> None:
        self._copy(remote_path, str(local_path), operation="download", remote_path=remote_path)

    def upload(self, local_path: Path, remote_path: str) -> None:
        self._copy(str(local_path), remote_path, operation="upload", remote_path=remote_path)

    def _copy(self, source: str, destination: str, *, operation: str, remote_path: str) -> None:
        command = [self.executable, "-q", "cp", source, destination]
        self.logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired as e:
            raise TransportError(
                f"gsutil timed out after {self.timeout_seconds:g}s",
                operation=operation,
                remote_path=remote_path,
                original_error=e,
            ) from e
        except FileNotFoundError as e:
            raise TransportError(
                f"'{self.executable}' not found on PATH",
                operation=operation,
                remote_path=remote_path,
                original_error=e,
            ) from e

        if result.returncode != 0:
            raise TransportError(
                f"gsutil exited with code {result.returncode}",
                operation=operation,
                remote_path=remote_path,
                details=(result.stderr or "").strip() or None,
            )


def create_transport(remote_path: str | None, logger: logging.Logger | None = None) -> RemoteTransport | None:
    """Create a transport for ``remote_path``; None means local-only mode.

    Raises:
        ConfigurationError: For unsupported remote schemes
    """
    if remote_path is None:
        return None
    if remote_path.startswith(REMOTE_SCHEME_GCS):
        return GsutilTransport(logger=logger)
    if remote_path.startswith(REMOTE_SCHEME_FILE) or "://" not in remote_path:
        return LocalDirectoryTransport()
    raise ConfigurationError(f"Unsupported remote storage path '{remote_path}'", field="remote_path")
