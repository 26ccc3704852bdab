"""Remote synchronization of release manifests."""

from safe_release.sync.retry import call_with_retry, compute_backoff_delay
from safe_release.sync.transport import (
    GsutilTransport,
    LocalDirectoryTransport,
    RemoteTransport,
    create_transport,
    join_remote,
)

__all__ = [
    "GsutilTransport",
    "LocalDirectoryTransport",
    "RemoteTransport",
    "call_with_retry",
    "compute_backoff_delay",
    "create_transport",
    "join_remote",
]
