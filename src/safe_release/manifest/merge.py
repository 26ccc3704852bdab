"""Merge policies for combining a release record into a manifest.

A merge function takes the current manifest document and returns the new
one. It must be deterministic, preserve the existing order of releases,
and raise ``MergeError`` instead of silently resolving a conflict it has
no rule for.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

from safe_release.core.constants import DEFAULT_RELEASE_KEY_FIELDS, RELEASES_KEY
from safe_release.core.exceptions import ConfigurationError, MergeError

MergeFn = Callable[[dict[str, Any]], dict[str, Any]]


def release_key(record: dict[str, Any], key_fields: Sequence[str] = DEFAULT_RELEASE_KEY_FIELDS) -> tuple:
    """Identity of a release record, e.g. ``("1.2.3", "macos")``."""
    return tuple(record.get(field) for field in key_fields)


def _check_record(record: Any, key_fields: Sequence[str]) -> None:
    if not isinstance(record, dict):
        raise MergeError(f"Release record must be a JSON object, got {type(record).__name__}")
    if all(record.get(field) is None for field in key_fields):
        raise MergeError(
            "Release record has no identifying fields",
            details=f"expected at least one of: {', '.join(key_fields)}",
        )


def _releases(document: dict[str, Any]) -> list[Any]:
    releases = document.get(RELEASES_KEY)
    if not isinstance(releases, list):
        raise MergeError(f"Manifest '{RELEASES_KEY}' must be a list")
    return releases


def _find(releases: list[Any], key: tuple, key_fields: Sequence[str]) -> int | None:
    for index, existing in enumerate(releases):
        if isinstance(existing, dict) and release_key(existing, key_fields) == key:
            return index
    return None


def insert_or_replace(record: dict[str, Any], key_fields: Sequence[str] = DEFAULT_RELEASE_KEY_FIELDS) -> MergeFn:
    """Append ``record``, or replace the entry with the same key in place."""
    _check_record(record, key_fields)
    key = release_key(record, key_fields)

    def _merge(document: dict[str, Any]) -> dict[str, Any]:
        releases = _releases(document)
        index = _find(releases, key, key_fields)
        if index is None:
            releases.append(dict(record))
        else:
            releases[index] = dict(record)
        return document

    return _merge


def append_if_absent(record: dict[str, Any], key_fields: Sequence[str] = DEFAULT_RELEASE_KEY_FIELDS) -> MergeFn:
    """Append ``record`` unless its key is present.

    An identical existing entry is a no-op; a different entry with the same
    key is a conflict and raises MergeError.
    """
    _check_record(record, key_fields)
    key = release_key(record, key_fields)

    def _merge(document: dict[str, Any]) -> dict[str, Any]:
        releases = _releases(document)
        index = _find(releases, key, key_fields)
        if index is None:
            releases.append(dict(record))
        elif releases[index] != record:
            raise MergeError(
                "Conflicting release already recorded",
                details=f"{dict(zip(key_fields, key, strict=True))} differs from the existing entry",
            )
        return document

    return _merge


MERGE_POLICY_FACTORIES: dict[str, Callable[..., MergeFn]] = {
    "replace": insert_or_replace,
    "append": append_if_absent,
}


def merge_for_policy(policy: str, record: dict[str, Any]) -> MergeFn:
    """Build the merge function for a named policy ("replace" or "append")."""
    factory = MERGE_POLICY_FACTORIES.get(policy)
    if factory is None:
        raise ConfigurationError(f"Unknown merge policy '{policy}'", field="merge_policy")
    return factory(record)
