"""End-to-end release publication.

ReleaseCoordinator is the only component aware of both the lock and the
manifest store. It runs the publication state machine

    IDLE -> ACQUIRING_LOCK -> LOCK_HELD -> FETCHING -> MERGING -> WRITING
         -> SYNCING -> RELEASED_SUCCESS

where any state may move to RELEASED_FAILURE. Both terminal states are
reached through ``_finish``, which always releases the lock first.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from safe_release.core.colors import SUCCESS_STATUS
from safe_release.core.config import PublishConfig
from safe_release.core.constants import EXIT_INTERRUPTED, EXIT_SUCCESS, EXIT_UNEXPECTED_ERROR
from safe_release.core.exceptions import SafeReleaseError
from safe_release.core.locks.manager import LockHandle, LockManager
from safe_release.core.logging import with_log_context
from safe_release.manifest.merge import MergeFn, merge_for_policy
from safe_release.manifest.store import (
    STAGE_FETCHING,
    STAGE_MERGING,
    STAGE_SYNCING,
    STAGE_WRITING,
    ManifestStore,
)
from safe_release.sync.transport import create_transport


class PublishState(Enum):
    """States of a single publication run."""

    IDLE = "idle"
    ACQUIRING_LOCK = "acquiring_lock"
    LOCK_HELD = "lock_held"
    FETCHING = "fetching"
    MERGING = "merging"
    WRITING = "writing"
    SYNCING = "syncing"
    RELEASED_SUCCESS = "released_success"
    RELEASED_FAILURE = "released_failure"


_STAGE_TO_STATE = {
    STAGE_FETCHING: PublishState.FETCHING,
    STAGE_MERGING: PublishState.MERGING,
    STAGE_WRITING: PublishState.WRITING,
    STAGE_SYNCING: PublishState.SYNCING,
}


@dataclass
class PublishResult:
    """Outcome of a publication run."""

    exit_code: int
    state: PublishState
    manifest: dict[str, Any] | None = None
    error: BaseException | None = None
    history: list[PublishState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == EXIT_SUCCESS


class ReleaseCoordinator:
    """Publish a release record into the shared manifest under the release lock.

    Args:
        config: Publication configuration
        lock_manager: Optional pre-built LockManager (built from config otherwise)
        store: Optional pre-built ManifestStore (built from config otherwise)
        logger: Logger for progress and diagnostics
    """

    def __init__(
        self,
        config: PublishConfig,
        *,
        lock_manager: LockManager | None = None,
        store: ManifestStore | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.lock_manager = lock_manager
        self.store = store
        self.state = PublishState.IDLE
        self.history: list[PublishState] = []

    def publish(self, resource_name: str, release_record: dict[str, Any]) -> int:
        """Publish ``release_record`` for ``resource_name`` and return the exit status."""
        return self.run(resource_name, release_record).exit_code

    def run(
        self,
        resource_name: str,
        release_record: dict[str, Any],
        merge_fn: MergeFn | None = None,
    ) -> PublishResult:
        """Run the full publication sequence.

        Args:
            resource_name: Platform / target tag
            release_record: Release entry to merge into the manifest
            merge_fn: Overrides the configured merge policy

        Returns:
            PublishResult with the exit code and final state. Configuration,
            lock, merge and sync failures are reported, never raised.
            KeyboardInterrupt and SystemExit are re-raised after the lock is
            released.
        """
        self.history = []
        self._transition(PublishState.IDLE)
        log = with_log_context(self.logger, resource_name=resource_name or None)
        log.info(f"Starting safe release process for platform: {resource_name or 'unknown'}")

        handle: LockHandle | None = None
        try:
            dataclasses.replace(self.config, resource_name=resource_name).validate()
            self._build_components()
            if merge_fn is None:
                merge_fn = merge_for_policy(self.config.merge_policy, release_record)

            self._transition(PublishState.ACQUIRING_LOCK)
            handle = self.lock_manager.acquire(resource_name, self.config.lock.timeout_seconds)
            self._transition(PublishState.LOCK_HELD)
            handle.verify()

            log.info("Executing release operations...")
            manifest = self.store.update(resource_name, merge_fn, handle)
            handle.verify()
        except SafeReleaseError as e:
            return self._finish(handle, log, error=e, exit_code=e.exit_code)
        except (KeyboardInterrupt, SystemExit) as e:
            self._finish(handle, log, error=e, exit_code=EXIT_INTERRUPTED)
            raise
        except Exception as e:
            log.exception(f"Unexpected error during release: {e}")
            return self._finish(handle, log, error=e, exit_code=EXIT_UNEXPECTED_ERROR)

        return self._finish(handle, log, manifest=manifest)

    def _build_components(self) -> None:
        if self.lock_manager is None:
            lock_cfg = self.config.lock
            self.lock_manager = LockManager(
                lock_cfg.lock_dir,
                stale_after_seconds=lock_cfg.effective_stale_after,
                poll_interval=lock_cfg.poll_interval,
                backend_name=lock_cfg.backend,
                heartbeat_interval=lock_cfg.heartbeat_interval,
                logger=self.logger,
            )
        if self.store is None:
            self.store = ManifestStore(
                self.config.work_dir,
                transport=create_transport(self.config.remote_path),
                remote_path=self.config.remote_path,
                retry=self.config.retry,
                logger=self.logger,
            )
        self.store.on_stage = self._on_stage

    def _on_stage(self, stage: str) -> None:
        state = _STAGE_TO_STATE.get(stage)
        if state is not None:
            self._transition(state)

    def _transition(self, state: PublishState) -> None:
        self.state = state
        self.history.append(state)
        self.logger.debug(f"Release state -> {state.value}")

    def _finish(
        self,
        handle: LockHandle | None,
        log: logging.Logger | logging.LoggerAdapter,
        *,
        manifest: dict[str, Any] | None = None,
        error: BaseException | None = None,
        exit_code: int = EXIT_SUCCESS,
    ) -> PublishResult:
        """Single cleanup path: release the lock, then report."""
        if handle is not None:
            try:
                handle.release()
            except Exception as release_error:
                log.error(f"Failed to release lock: {release_error}")
                if exit_code == EXIT_SUCCESS:
                    exit_code = EXIT_UNEXPECTED_ERROR
                    error = release_error

        if exit_code == EXIT_SUCCESS:
            self._transition(PublishState.RELEASED_SUCCESS)
            log.info("Release process completed successfully", extra={"status": SUCCESS_STATUS})
        else:
            self._transition(PublishState.RELEASED_FAILURE)
            if error is not None and not isinstance(error, (KeyboardInterrupt, SystemExit)):
                log.error(f"{error}")
            log.error(f"Release builder failed with exit code: {exit_code}")

        return PublishResult(
            exit_code=exit_code,
            state=self.state,
            manifest=manifest,
            error=error,
            history=list(self.history),
        )
