"""
Safe Release - Concurrency-safe publication of release manifests

Serializes concurrent release builds behind a cross-process lock and
updates the shared release manifest with backup, atomic replacement and
rollback on upload failure.
"""

from safe_release.coordinator import PublishResult, PublishState, ReleaseCoordinator
from safe_release.core.version import __version__

__all__ = ["PublishResult", "PublishState", "ReleaseCoordinator", "__version__", "main"]


def main() -> int:
    from safe_release.cli.main import main as _main

    return _main()
