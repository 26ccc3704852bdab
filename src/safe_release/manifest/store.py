"""Backup-protected, atomic read-merge-write of release manifests.

The local manifest is only ever replaced by renaming a fully written
temporary file over it, so readers observe either the old or the new
document. The remote copy is uploaded only after the local copy has been
re-read and confirmed well formed; if the upload fails the local file is
restored from its backup (unless the lock was lost meanwhile) and the update
is reported as not committed.
"""

from __future__ import annotations

import contextlib
import copy
import glob
import json
import logging
import os
import shutil
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from safe_release.core.colors import SUCCESS_STATUS
from safe_release.core.config import RetryConfig
from safe_release.core.constants import MANIFEST_FILENAME_TEMPLATE, RELEASES_KEY, default_manifest
from safe_release.core.exceptions import (
    LockLostError,
    ManifestFormatError,
    MergeError,
    SyncError,
    TransportError,
)
from safe_release.core.locks.manager import LockHandle
from safe_release.manifest.merge import MergeFn
from safe_release.sync.retry import call_with_retry
from safe_release.sync.transport import RemoteTransport, join_remote

# Stage names reported to the on_stage callback, in order
STAGE_FETCHING = "fetching"
STAGE_MERGING = "merging"
STAGE_WRITING = "writing"
STAGE_SYNCING = "syncing"


def check_manifest(document: Any, source: str) -> dict[str, Any]:
    """Return ``document`` if it is a JSON object with a ``releases`` list.

    Raises:
        ManifestFormatError: If the document has the wrong shape
    """
    if not isinstance(document, dict):
        raise ManifestFormatError(
            f"Manifest from {source} must be a JSON object, got {type(document).__name__}", manifest_path=source
        )
    if not isinstance(document.get(RELEASES_KEY), list):
        raise ManifestFormatError(f"Manifest from {source} has no '{RELEASES_KEY}' list", manifest_path=source)
    return document


def read_manifest_file(path: Path) -> dict[str, Any]:
    """Parse and shape-check a manifest file.

    Raises:
        OSError: If the file cannot be read
        ManifestFormatError: If the content is not a valid manifest
    """
    with open(path, encoding="utf-8") as f:
        try:
            document = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ManifestFormatError("Manifest is not valid JSON", manifest_path=str(path), details=str(e)) from e
    return check_manifest(document, str(path))


def serialize_manifest(document: dict[str, Any]) -> bytes:
    return (json.dumps(document, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


class ManifestStore:
    """Read, merge and atomically write back the shared release manifest.

    The store never owns the lock: callers pass an already held LockHandle
    and the store verifies it before merging, before writing and before
    uploading.

    Args:
        work_dir: Directory holding the local working copy
        transport: Remote transport; None means local-only mode
        remote_path: Remote prefix the manifest object lives under
        retry: Retry configuration for remote transfers
        filename_template: Manifest filename, formatted with ``resource``
        logger: Logger for progress and diagnostics
        on_stage: Optional callback invoked with each stage name
    """

    def __init__(
        self,
        work_dir: Path | str,
        *,
        transport: RemoteTransport | None = None,
        remote_path: str | None = None,
        retry: RetryConfig | None = None,
        filename_template: str = MANIFEST_FILENAME_TEMPLATE,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        on_stage: Callable[[str], None] | None = None,
    ):
        if (transport is None) != (remote_path is None):
            raise ValueError("transport and remote_path must be given together")
        self.work_dir = Path(work_dir)
        self.transport = transport
        self.remote_path = remote_path
        self.retry = retry or RetryConfig()
        self.filename_template = filename_template
        self.logger = logger or logging.getLogger(__name__)
        self.on_stage = on_stage

    def manifest_path(self, resource_name: str) -> Path:
        return self.work_dir / self.filename_template.format(resource=resource_name)

    def backup_path(self, resource_name: str) -> Path:
        path = self.manifest_path(resource_name)
        return path.with_name(f"{path.name}.backup.{os.getpid()}")

    def remote_object(self, resource_name: str) -> str | None:
        if self.remote_path is None:
            return None
        return join_remote(self.remote_path, self.manifest_path(resource_name).name)

    def load(self, resource_name: str) -> dict[str, Any]:
        """Read the local manifest, or the empty default when it does not exist.

        Intended for diagnostics; the result may be superseded by another
        holder's update at any moment.
        """
        path = self.manifest_path(resource_name)
        if not path.exists():
            return default_manifest()
        return read_manifest_file(path)

    def fetch(self, resource_name: str) -> dict[str, Any]:
        """Current manifest: remote copy, else local copy, else empty default.

        Download failures are logged and never propagated. A downloaded
        document that is not a valid manifest raises ManifestFormatError.
        """
        path = self.manifest_path(resource_name)
        remote_object = self.remote_object(resource_name)

        if self.transport is not None and remote_object is not None:
            self.logger.info("Downloading current version from cloud storage...")
            path.parent.mkdir(parents=True, exist_ok=True)
            download_path = path.with_name(f".{path.name}.download.{uuid.uuid4().hex}")
            try:
                call_with_retry(
                    self.transport.download,
                    remote_object,
                    download_path,
                    retry=self.retry,
                    logger=self.logger,
                    operation_name="download",
                )
                document = read_manifest_file(download_path)
            except TransportError as e:
                self.logger.warning(f"Could not download from cloud storage, using local version ({e})")
            except OSError as e:
                self.logger.warning(f"Downloaded manifest could not be read, using local version ({e})")
            else:
                self.logger.info("Downloaded current version", extra={"status": SUCCESS_STATUS})
                return document
            finally:
                with contextlib.suppress(OSError):
                    download_path.unlink()

        if path.exists():
            return read_manifest_file(path)
        self.logger.info(f"No existing manifest at {path}; starting from an empty release list")
        return default_manifest()

    def update(self, resource_name: str, merge_fn: MergeFn, lock: LockHandle) -> dict[str, Any]:
        """Fetch, merge, atomically replace and upload the manifest.

        Args:
            resource_name: Resource whose manifest is updated
            merge_fn: Combines the new release into the document
            lock: Held lock for ``resource_name``; verified at each checkpoint

        Returns:
            The committed manifest document

        Raises:
            LockLostError: If the lock is lost at a checkpoint
            MergeError: If the merge function rejects the combination
            ManifestFormatError: If a fetched or written document is malformed
            SyncError: If the upload fails (local file restored from backup)
        """
        path = self.manifest_path(resource_name)
        backup_path = self.backup_path(resource_name)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Updating JSON file: {path}")

        self._stage(STAGE_FETCHING)
        document = self.fetch(resource_name)

        self._remove_orphaned_backups(path)
        had_original = self._create_backup(path, backup_path)
        replaced = False
        try:
            lock.verify()

            self._stage(STAGE_MERGING)
            self.logger.info("Merging release data...")
            merged = self._apply_merge(merge_fn, document, str(path))
            lock.verify()

            self._stage(STAGE_WRITING)
            self._atomic_write(path, merged)
            replaced = True
            self.logger.info("JSON file updated successfully", extra={"status": SUCCESS_STATUS})

            lock.verify()
            self._confirm_written(path, merged)

            remote_object = self.remote_object(resource_name)
            if self.transport is not None and remote_object is not None:
                self._stage(STAGE_SYNCING)
                self._upload(path, remote_object, backup_path, had_original, lock)
        except LockLostError:
            # Without the lock the file belongs to the next holder; never touch it again.
            self._discard_backup(backup_path)
            raise
        except SyncError:
            raise
        except BaseException:
            if replaced:
                self._restore_backup(path, backup_path, had_original)
            else:
                self._discard_backup(backup_path)
            raise

        self._discard_backup(backup_path)
        return merged

    def _stage(self, stage: str) -> None:
        if self.on_stage is not None:
            self.on_stage(stage)

    def _remove_orphaned_backups(self, path: Path) -> None:
        """Delete backups left next to ``path`` by runs that died mid-update."""
        for orphan in path.parent.glob(f"{glob.escape(path.name)}.backup.*"):
            try:
                orphan.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                self.logger.warning(f"Could not remove orphaned backup {orphan}: {e}")
                continue
            self.logger.warning(f"Removed orphaned backup from an interrupted run: {orphan}")

    def _create_backup(self, path: Path, backup_path: Path) -> bool:
        if not path.exists():
            return False
        shutil.copy2(path, backup_path)
        self.logger.info(f"Created backup: {backup_path}")
        return True

    def _discard_backup(self, backup_path: Path) -> None:
        try:
            backup_path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            self.logger.warning(f"Could not remove backup file {backup_path}: {e}")
            return
        self.logger.info("Cleaned up backup file")

    def _restore_backup(self, path: Path, backup_path: Path, had_original: bool) -> bool:
        """Reinstate the pre-update local state. Returns True on success."""
        try:
            if had_original:
                os.replace(backup_path, path)
            else:
                path.unlink(missing_ok=True)
        except OSError as e:
            self.logger.error(f"Failed to restore backup {backup_path} over {path}: {e}")
            return False
        self.logger.warning(f"Restored backup over {path}")
        return True

    def _apply_merge(self, merge_fn: MergeFn, document: dict[str, Any], source: str) -> dict[str, Any]:
        try:
            merged = merge_fn(copy.deepcopy(document))
        except MergeError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise MergeError("Merge function rejected the release", manifest_path=source, details=str(e)) from e
        try:
            return check_manifest(merged, "merge result")
        except ManifestFormatError as e:
            raise MergeError("Merge function returned an invalid manifest", manifest_path=source, details=str(e)) from e

    def _atomic_write(self, path: Path, document: dict[str, Any]) -> None:
        """Write to a temporary file in the same directory, then rename over ``path``."""
        tmp_path = path.with_name(f"{path.name}.tmp.{os.getpid()}.{uuid.uuid4().hex}")
        try:
            with open(tmp_path, "wb") as f:
                f.write(serialize_manifest(document))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise

    def _confirm_written(self, path: Path, expected: dict[str, Any]) -> None:
        written = read_manifest_file(path)
        if written != expected:
            raise ManifestFormatError("Local manifest does not match the merged document", manifest_path=str(path))

    def _upload(
        self, path: Path, remote_object: str, backup_path: Path, had_original: bool, lock: LockHandle
    ) -> None:
        self.logger.info("Uploading updated version to cloud storage...")
        try:
            call_with_retry(
                self.transport.upload,
                path,
                remote_object,
                retry=self.retry,
                logger=self.logger,
                operation_name="upload",
            )
        except TransportError as e:
            self.logger.error(f"Failed to upload to cloud storage: {e}")
            # A stalled upload can outlive the lock; the file may already be the next holder's.
            try:
                lock.verify()
            except LockLostError as lost:
                self.logger.error("Lock lost during upload; local manifest left as is")
                raise lost from e
            restored = self._restore_backup(path, backup_path, had_original)
            raise SyncError(
                "Failed to upload release manifest; update not committed",
                manifest_path=str(path),
                remote_path=remote_object,
                restored=restored,
                details=str(e),
                original_error=e,
            ) from e
        self.logger.info("Uploaded to cloud storage", extra={"status": SUCCESS_STATUS})
