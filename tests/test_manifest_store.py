"""Tests for ManifestStore: backup, atomic replace, upload and rollback."""

from __future__ import annotations

import json
import shutil
import threading
from pathlib import Path

import pytest

from conftest import FakeLock, FakeTransport
from safe_release.core.config import RetryConfig
from safe_release.core.exceptions import LockLostError, ManifestFormatError, MergeError, SyncError, TransportError
from safe_release.core.locks.manager import LockManager
from safe_release.manifest.merge import append_if_absent, insert_or_replace
from safe_release.manifest.store import ManifestStore, read_manifest_file, serialize_manifest

REMOTE = "gs://releases-bucket/releases"
REMOTE_OBJECT = f"{REMOTE}/releases_macos.json"


def _store(work_dir: Path, transport: FakeTransport | None, retry: RetryConfig, **kwargs) -> ManifestStore:
    return ManifestStore(
        work_dir,
        transport=transport,
        remote_path=REMOTE if transport is not None else None,
        retry=retry,
        **kwargs,
    )


def _backups(work_dir: Path) -> list[Path]:
    return list(work_dir.glob("*.backup.*"))


def _leftovers(work_dir: Path) -> list[Path]:
    return [p for p in work_dir.iterdir() if p.name != "releases_macos.json"]


def _write_local(work_dir: Path, document: dict) -> bytes:
    payload = serialize_manifest(document)
    (work_dir / "releases_macos.json").write_bytes(payload)
    return payload


def test_commit_on_empty_system(work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig) -> None:
    store = _store(work_dir, fake_transport, fast_retry)
    lock = FakeLock()

    result = store.update("macos", insert_or_replace({"version": "1.2.3"}), lock)

    expected = {"releases": [{"version": "1.2.3"}]}
    assert result == expected
    assert read_manifest_file(store.manifest_path("macos")) == expected
    assert json.loads(fake_transport.objects[REMOTE_OBJECT]) == expected
    assert fake_transport.objects[REMOTE_OBJECT] == store.manifest_path("macos").read_bytes()
    assert _backups(work_dir) == []
    assert _leftovers(work_dir) == []
    assert lock.verify_calls == 3


def test_remote_copy_takes_precedence_over_local(
    work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig
) -> None:
    fake_transport.objects[REMOTE_OBJECT] = serialize_manifest({"releases": [{"version": "1.0.0"}]})
    _write_local(work_dir, {"releases": [{"version": "0.1.0-stale-local"}]})
    store = _store(work_dir, fake_transport, fast_retry)

    result = store.update("macos", insert_or_replace({"version": "1.1.0"}), FakeLock())

    assert [r["version"] for r in result["releases"]] == ["1.0.0", "1.1.0"]


def test_download_failure_falls_back_to_local(
    work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig
) -> None:
    _write_local(work_dir, {"releases": [{"version": "1.0.0"}]})
    fake_transport.download_failures = 10
    store = _store(work_dir, fake_transport, fast_retry)

    result = store.update("macos", insert_or_replace({"version": "1.1.0"}), FakeLock())

    assert [r["version"] for r in result["releases"]] == ["1.0.0", "1.1.0"]
    assert len(fake_transport.downloads) == 2  # initial attempt + 1 retry
    assert json.loads(fake_transport.objects[REMOTE_OBJECT]) == result


def test_transient_download_failure_is_retried(
    work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig
) -> None:
    fake_transport.objects[REMOTE_OBJECT] = serialize_manifest({"releases": [{"version": "1.0.0"}]})
    fake_transport.download_failures = 1
    store = _store(work_dir, fake_transport, fast_retry)

    assert store.fetch("macos") == {"releases": [{"version": "1.0.0"}]}
    assert len(fake_transport.downloads) == 2


def test_upload_failure_restores_local_byte_for_byte(
    work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig
) -> None:
    original = _write_local(work_dir, {"releases": [{"version": "1.0.0", "platform": "macos"}]})
    fake_transport.objects[REMOTE_OBJECT] = original
    remote_before = dict(fake_transport.objects)
    fake_transport.upload_failures = 10
    store = _store(work_dir, fake_transport, fast_retry)

    with pytest.raises(SyncError) as exc_info:
        store.update("macos", insert_or_replace({"version": "1.1.0", "platform": "macos"}), FakeLock())

    assert exc_info.value.restored is True
    assert exc_info.value.exit_code == 6
    assert store.manifest_path("macos").read_bytes() == original
    assert fake_transport.objects == remote_before
    assert len(fake_transport.uploads) == 2
    assert _backups(work_dir) == []


def test_upload_failure_without_prior_local_file_removes_it(
    work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig
) -> None:
    fake_transport.upload_failures = 10
    store = _store(work_dir, fake_transport, fast_retry)

    with pytest.raises(SyncError):
        store.update("macos", insert_or_replace({"version": "1.0.0"}), FakeLock())

    assert not store.manifest_path("macos").exists()
    assert fake_transport.objects == {}
    assert list(work_dir.iterdir()) == []


def test_merge_conflict_leaves_everything_untouched(
    work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig
) -> None:
    existing = {"version": "1.0.0", "platform": "macos", "sha256": "abc"}
    original = _write_local(work_dir, {"releases": [existing]})
    fake_transport.download_failures = 10
    store = _store(work_dir, fake_transport, fast_retry)

    with pytest.raises(MergeError):
        store.update("macos", append_if_absent({**existing, "sha256": "def"}), FakeLock())

    assert store.manifest_path("macos").read_bytes() == original
    assert fake_transport.uploads == []
    assert _leftovers(work_dir) == []


def test_merge_function_errors_become_merge_errors(work_dir: Path, fast_retry: RetryConfig) -> None:
    def _broken_merge(document: dict) -> dict:
        return document["missing"]

    store = _store(work_dir, None, fast_retry)

    with pytest.raises(MergeError, match="rejected the release"):
        store.update("macos", _broken_merge, FakeLock())


def test_merge_result_must_be_a_manifest(work_dir: Path, fast_retry: RetryConfig) -> None:
    store = _store(work_dir, None, fast_retry)

    with pytest.raises(MergeError, match="invalid manifest"):
        store.update("macos", lambda document: {"versions": []}, FakeLock())

    assert not store.manifest_path("macos").exists()


def test_merge_does_not_mutate_fetched_document(work_dir: Path, fast_retry: RetryConfig) -> None:
    _write_local(work_dir, {"releases": [{"version": "1.0.0"}]})
    store = _store(work_dir, None, fast_retry)
    seen: list[dict] = []

    def _merge_then_fail(document: dict) -> dict:
        document["releases"].append({"version": "2.0.0"})
        seen.append(document)
        raise MergeError("refusing")

    with pytest.raises(MergeError):
        store.update("macos", _merge_then_fail, FakeLock())

    assert read_manifest_file(store.manifest_path("macos")) == {"releases": [{"version": "1.0.0"}]}


def test_malformed_remote_manifest_aborts_before_write(
    work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig
) -> None:
    original = _write_local(work_dir, {"releases": []})
    fake_transport.objects[REMOTE_OBJECT] = b'{"releases": "not a list"}'
    store = _store(work_dir, fake_transport, fast_retry)

    with pytest.raises(ManifestFormatError):
        store.update("macos", insert_or_replace({"version": "1.0.0"}), FakeLock())

    assert store.manifest_path("macos").read_bytes() == original
    assert fake_transport.uploads == []
    assert _leftovers(work_dir) == []


def test_malformed_local_manifest_is_reported(work_dir: Path, fast_retry: RetryConfig) -> None:
    (work_dir / "releases_macos.json").write_text("{truncated", encoding="utf-8")
    store = _store(work_dir, None, fast_retry)

    with pytest.raises(ManifestFormatError, match="not valid JSON"):
        store.update("macos", insert_or_replace({"version": "1.0.0"}), FakeLock())


def test_lock_lost_before_write_leaves_file_untouched(
    work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig
) -> None:
    original = _write_local(work_dir, {"releases": [{"version": "1.0.0"}]})
    fake_transport.download_failures = 10
    store = _store(work_dir, fake_transport, fast_retry)

    with pytest.raises(LockLostError):
        store.update("macos", insert_or_replace({"version": "1.1.0"}), FakeLock(fail_on=2))

    assert store.manifest_path("macos").read_bytes() == original
    assert fake_transport.uploads == []
    assert _backups(work_dir) == []


def test_lock_lost_after_write_skips_upload_and_restore(
    work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig
) -> None:
    _write_local(work_dir, {"releases": [{"version": "1.0.0"}]})
    fake_transport.download_failures = 10
    store = _store(work_dir, fake_transport, fast_retry)

    with pytest.raises(LockLostError):
        store.update("macos", insert_or_replace({"version": "1.1.0"}), FakeLock(fail_on=3))

    # The next holder owns the file now; it is neither restored nor uploaded.
    assert [r["version"] for r in read_manifest_file(store.manifest_path("macos"))["releases"]] == ["1.0.0", "1.1.0"]
    assert fake_transport.uploads == []
    assert _backups(work_dir) == []


class _StalledUploadTransport(FakeTransport):
    """Upload stalls long enough for the lock to pass to a successor, then fails."""

    def __init__(self, lock_dir: Path, work_dir: Path):
        super().__init__()
        self.lock_dir = lock_dir
        self.work_dir = work_dir
        self.successor_document = {"releases": [{"version": "9.9.9", "platform": "macos"}]}

    def upload(self, local_path: Path, remote_path: str) -> None:
        self.uploads.append(remote_path)
        if len(self.uploads) == 1:
            manager = LockManager(self.lock_dir, poll_interval=0.01)
            shutil.rmtree(manager.marker_path("macos"))
            with manager.acquire("macos", timeout_seconds=1):
                (self.work_dir / "releases_macos.json").write_bytes(serialize_manifest(self.successor_document))
        raise TransportError("simulated upload failure", operation="upload", remote_path=remote_path)


def test_upload_failure_after_lock_loss_keeps_successor_manifest(
    lock_dir: Path, work_dir: Path, fast_retry: RetryConfig
) -> None:
    _write_local(work_dir, {"releases": []})
    transport = _StalledUploadTransport(lock_dir, work_dir)
    store = _store(work_dir, transport, fast_retry)

    with LockManager(lock_dir, poll_interval=0.01).acquire("macos", timeout_seconds=1) as lock:
        with pytest.raises(LockLostError):
            store.update("macos", insert_or_replace({"version": "1.1.0", "platform": "macos"}), lock)

    assert read_manifest_file(store.manifest_path("macos")) == transport.successor_document
    assert REMOTE_OBJECT not in transport.objects
    assert _backups(work_dir) == []


def test_orphaned_backups_from_crashed_runs_are_removed(work_dir: Path, fast_retry: RetryConfig) -> None:
    original = _write_local(work_dir, {"releases": [{"version": "1.0.0"}]})
    orphan = work_dir / "releases_macos.json.backup.99999"
    orphan.write_bytes(original)
    other_platform = work_dir / "releases_linux.json.backup.99999"
    other_platform.write_bytes(original)
    store = _store(work_dir, None, fast_retry)

    store.update("macos", insert_or_replace({"version": "1.1.0"}), FakeLock())

    assert not orphan.exists()
    assert other_platform.exists()
    assert [p.name for p in _backups(work_dir)] == ["releases_linux.json.backup.99999"]


def test_stages_reported_in_order(work_dir: Path, fake_transport: FakeTransport, fast_retry: RetryConfig) -> None:
    stages: list[str] = []
    store = _store(work_dir, fake_transport, fast_retry, on_stage=stages.append)

    store.update("macos", insert_or_replace({"version": "1.0.0"}), FakeLock())

    assert stages == ["fetching", "merging", "writing", "syncing"]


def test_local_only_mode_never_syncs(work_dir: Path, fast_retry: RetryConfig) -> None:
    stages: list[str] = []
    store = _store(work_dir, None, fast_retry, on_stage=stages.append)

    store.update("macos", insert_or_replace({"version": "1.0.0"}), FakeLock())

    assert stages == ["fetching", "merging", "writing"]
    assert read_manifest_file(store.manifest_path("macos")) == {"releases": [{"version": "1.0.0"}]}
    assert store.remote_object("macos") is None


def test_readers_never_observe_partial_manifest(work_dir: Path, fast_retry: RetryConfig) -> None:
    _write_local(work_dir, {"releases": []})
    store = _store(work_dir, None, fast_retry)
    path = store.manifest_path("macos")
    done = threading.Event()
    bad_reads: list[bytes] = []
    reads = 0

    def _reader() -> None:
        nonlocal reads
        while not done.is_set():
            payload = path.read_bytes()
            reads += 1
            try:
                document = json.loads(payload)
            except json.JSONDecodeError:
                bad_reads.append(payload)
                continue
            if not isinstance(document.get("releases"), list):
                bad_reads.append(payload)

    reader = threading.Thread(target=_reader)
    reader.start()
    try:
        for i in range(40):
            record = {"version": f"1.0.{i}", "notes": "x" * 4096}
            store.update("macos", insert_or_replace(record), FakeLock())
    finally:
        done.set()
        reader.join(timeout=5)

    assert bad_reads == []
    assert reads > 0
    assert len(read_manifest_file(path)["releases"]) == 40


def test_store_requires_transport_and_remote_path_together(work_dir: Path) -> None:
    with pytest.raises(ValueError):
        ManifestStore(work_dir, transport=FakeTransport())
    with pytest.raises(ValueError):
        ManifestStore(work_dir, remote_path=REMOTE)


def test_load_returns_default_when_missing(work_dir: Path) -> None:
    assert ManifestStore(work_dir).load("macos") == {"releases": []}


def test_backup_path_is_sibling_of_manifest(work_dir: Path) -> None:
    store = ManifestStore(work_dir)
    backup = store.backup_path("macos")
    assert backup.parent == work_dir
    assert backup.name.startswith("releases_macos.json.backup.")
