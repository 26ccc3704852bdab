"""Command-line argument parsing for safe-release."""

from __future__ import annotations

import argparse
from collections.abc import Sequence

import argcomplete

from safe_release.core.constants import LOCK_BACKENDS, LOG_LEVELS, MERGE_POLICIES
from safe_release.core.version import __version__


def build_parser() -> argparse.ArgumentParser:
    """Build the safe-release argument parser"""
    parser = argparse.ArgumentParser(
        prog="safe-release",
        description="Safe Release - publish a release record into the shared release manifest under an exclusive lock",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Publish a macOS release to Google Cloud Storage
  safe-release --platform macos --cloud-storage gs://my-bucket/releases --version 1.2.3

  # Attach archive details
  safe-release --platform linux --version 1.2.3 --archive stable/linux/app_1.2.3.tar.xz --sha256 abc123

  # Extra fields, or a complete record from a JSON file
  safe-release --platform windows --version 1.2.3 --set dart_sdk_version=3.4.0
  safe-release --platform windows --version 1.2.3 --record release.json

  # Local-only mode (no cloud storage)
  safe-release --platform linux --version 1.2.3

  # Wait up to 10 minutes for the lock
  safe-release --platform macos --version 1.2.3 --timeout 600

  # Inspect the current lock holder and local manifest
  safe-release --platform macos --show-lock
  safe-release --platform macos --show-manifest

Environment Variables:
  PLATFORM                   Target platform (same as --platform)
  CLOUD_STORAGE_PATH         Remote storage prefix (same as --cloud-storage)
  RELEASE_LOCK_TIMEOUT       Lock timeout in seconds (same as --timeout)
  RELEASE_LOCK_STALE_AFTER   Stale lock threshold in seconds (same as --stale-after)
  RELEASE_LOCK_DIR           Lock marker directory (same as --lock-dir)
  RELEASE_LOCK_BACKEND       Lock backend (same as --lock-backend)
  RELEASE_WORK_DIR           Local manifest directory (same as --work-dir)
  LOG_LEVEL                  Default log level

Values may also be placed in a .env file in the current directory.

Exit Codes:
  0    Release published
  1    Unexpected error
  2    Configuration error
  3    Timed out waiting for the lock
  4    Lock lost during the update
  5    Merge or manifest format error
  6    Upload to cloud storage failed (local manifest restored)
  130  Interrupted
""",
    )

    parser.add_argument("-V", "--tool-version", action="version", version=f"%(prog)s {__version__}")

    target_group = parser.add_argument_group("Target")
    target_group.add_argument(
        "--platform",
        dest="resource_name",
        metavar="NAME",
        help="Target platform (e.g., macos, linux, windows). Default: $PLATFORM",
    )
    target_group.add_argument(
        "--cloud-storage",
        dest="remote_path",
        metavar="PATH",
        help="Remote storage prefix (gs://bucket/dir, file:// URL or mounted directory). "
        "Default: $CLOUD_STORAGE_PATH, or local-only mode when unset",
    )
    target_group.add_argument(
        "--work-dir",
        metavar="DIR",
        help="Directory holding the local manifest copy. Default: $RELEASE_WORK_DIR or current directory",
    )

    record_group = parser.add_argument_group("Release Record")
    record_group.add_argument("--version", dest="release_version", metavar="VERSION", help="Release version to publish")
    record_group.add_argument("--channel", metavar="NAME", help="Release channel (e.g., stable, beta)")
    record_group.add_argument("--archive", metavar="PATH", help="Archive path recorded for this release")
    record_group.add_argument("--sha256", metavar="HASH", help="Archive SHA-256 digest")
    record_group.add_argument(
        "--set",
        dest="extra_fields",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Additional record field; may be repeated",
    )
    record_group.add_argument("--record", dest="record_file", metavar="FILE", help="JSON file with the base release record")
    record_group.add_argument(
        "--merge-policy",
        choices=MERGE_POLICIES,
        default="replace",
        help="replace: overwrite an existing entry for the same version; "
        "append: fail if a different entry already exists (default: replace)",
    )

    lock_group = parser.add_argument_group("Locking")
    lock_group.add_argument(
        "--timeout",
        dest="lock_timeout",
        type=float,
        metavar="SECONDS",
        help="Maximum seconds to wait for the lock. Default: $RELEASE_LOCK_TIMEOUT or 300",
    )
    lock_group.add_argument(
        "--stale-after",
        type=float,
        metavar="SECONDS",
        help="Age after which an unreleased lock is considered abandoned. Default: same as --timeout",
    )
    lock_group.add_argument("--lock-dir", metavar="DIR", help="Directory for lock markers. Default: system temp dir")
    lock_group.add_argument("--lock-backend", choices=LOCK_BACKENDS, help="Lock marker backend (default: directory)")
    lock_group.add_argument(
        "--poll-interval", type=float, metavar="SECONDS", help="Seconds between lock attempts (default: 1)"
    )
    lock_group.add_argument(
        "--heartbeat-interval",
        type=float,
        metavar="SECONDS",
        help="Refresh the lock marker while held; 0 disables (default: 0)",
    )

    sync_group = parser.add_argument_group("Cloud Storage")
    sync_group.add_argument(
        "--max-retries", type=int, metavar="N", help="Retries for each download/upload attempt (default: 2)"
    )

    output_group = parser.add_argument_group("Output")
    output_group.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, help="Log level (default: $LOG_LEVEL or INFO)")
    output_group.add_argument("--log-format", choices=("text", "json"), default="text", help="Log output format")
    output_group.add_argument("--log-dir", metavar="DIR", help="Also write rotating log files to DIR")
    output_group.add_argument("--no-color", action="store_true", help="Disable ANSI colors in console output")

    diag_group = parser.add_argument_group("Diagnostics")
    diag_mode = diag_group.add_mutually_exclusive_group()
    diag_mode.add_argument("--show-lock", action="store_true", help="Print the current lock holder and exit")
    diag_mode.add_argument("--show-manifest", action="store_true", help="Print the local manifest and exit")

    return parser


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments"""
    parser = build_parser()
    argcomplete.autocomplete(parser)
    return parser.parse_args(argv)
