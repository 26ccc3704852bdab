"""Release manifest storage and merge policies."""

from safe_release.manifest.merge import (
    MergeFn,
    append_if_absent,
    insert_or_replace,
    merge_for_policy,
    release_key,
)
from safe_release.manifest.store import ManifestStore, check_manifest, read_manifest_file

__all__ = [
    "ManifestStore",
    "MergeFn",
    "append_if_absent",
    "check_manifest",
    "insert_or_replace",
    "merge_for_policy",
    "read_manifest_file",
    "release_key",
]
