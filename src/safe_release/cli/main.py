"""Entry point for the safe-release command."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from dotenv import load_dotenv

from safe_release.cli.parser import parse_arguments
from safe_release.coordinator import ReleaseCoordinator
from safe_release.core.colors import ConsoleColors
from safe_release.core.config import PublishConfig
from safe_release.core.constants import (
    BANNER_WIDTH,
    EXIT_CONFIG_ERROR,
    EXIT_INTERRUPTED,
    EXIT_SUCCESS,
    EXIT_UNEXPECTED_ERROR,
)
from safe_release.core.exceptions import ConfigurationError, ManifestError
from safe_release.core.locks.manager import LockManager
from safe_release.core.logging import setup_logging
from safe_release.manifest.store import ManifestStore


def _parse_field(assignment: str) -> tuple[str, Any]:
    """Split ``KEY=VALUE``; VALUE is parsed as JSON when possible, else kept as a string."""
    key, sep, raw = assignment.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ConfigurationError(f"Invalid --set value '{assignment}'", field="set", details="expected KEY=VALUE")
    try:
        return key, json.loads(raw)
    except json.JSONDecodeError:
        return key, raw


def build_release_record(args: argparse.Namespace, resource_name: str) -> dict[str, Any]:
    """Assemble the release record from ``--record``, ``--set`` and the named flags.

    Named flags override ``--set`` fields, which override the record file.

    Raises:
        ConfigurationError: If the record file is unreadable or a field is malformed
    """
    record: dict[str, Any] = {}
    if args.record_file:
        try:
            with open(args.record_file, encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Cannot read release record file '{args.record_file}'", field="record", details=str(e)
            ) from e
        if not isinstance(loaded, dict):
            raise ConfigurationError("Release record file must contain a JSON object", field="record")
        record.update(loaded)

    for assignment in args.extra_fields:
        key, value = _parse_field(assignment)
        record[key] = value

    named = {
        "version": args.release_version,
        "channel": args.channel,
        "archive": args.archive,
        "sha256": args.sha256,
    }
    record.update({key: value for key, value in named.items() if value is not None})

    if not record.get("version"):
        raise ConfigurationError("Release version not set", field="version", details="pass --version or --record")
    record["platform"] = resource_name
    record.setdefault("release_date", datetime.now(UTC).isoformat())
    return record


def _handle_sigterm(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt(f"Received signal {signum}")


def _show_lock(config: PublishConfig) -> int:
    manager = LockManager(config.lock.lock_dir, backend_name=config.lock.backend)
    info = manager.read_info(config.resource_name)
    if info is None:
        print(f"No lock held for {config.resource_name} ({manager.marker_path(config.resource_name)})")
    else:
        print(json.dumps(info, indent=2))
    return EXIT_SUCCESS


def _show_manifest(config: PublishConfig, logger: logging.Logger) -> int:
    store = ManifestStore(config.work_dir, logger=logger)
    try:
        document = store.load(config.resource_name)
    except (OSError, ManifestError) as e:
        logger.error(f"Cannot read manifest {store.manifest_path(config.resource_name)}: {e}")
        return e.exit_code if isinstance(e, ManifestError) else EXIT_UNEXPECTED_ERROR
    print(json.dumps(document, indent=2, ensure_ascii=False))
    return EXIT_SUCCESS


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the safe-release command"""
    load_dotenv()
    args = parse_arguments(argv)
    if args.no_color:
        ConsoleColors.set_enabled(False)

    try:
        config = PublishConfig.from_args(args)
        config.validate()
    except ConfigurationError as e:
        logger = setup_logging(log_format=args.log_format)
        logger.error(f"{e}")
        return EXIT_CONFIG_ERROR

    logger = setup_logging(
        resource_name=config.resource_name,
        log_level=config.log.level,
        log_format=config.log.format,
        log_dir=config.log.log_dir,
    )

    if args.show_lock:
        return _show_lock(config)
    if args.show_manifest:
        return _show_manifest(config, logger)

    try:
        record = build_release_record(args, config.resource_name)
    except ConfigurationError as e:
        logger.error(f"{e}")
        return EXIT_CONFIG_ERROR

    logger.info("=" * BANNER_WIDTH)
    logger.info(f"Publishing {record['version']} for {config.resource_name}")
    logger.info(f"Cloud storage: {config.remote_path or 'local-only'}")
    logger.info("=" * BANNER_WIDTH)

    previous_handler = signal.signal(signal.SIGTERM, _handle_sigterm)
    try:
        return ReleaseCoordinator(config, logger=logger).publish(config.resource_name, record)
    except KeyboardInterrupt:
        logger.warning("Release interrupted; lock released")
        return EXIT_INTERRUPTED
    finally:
        signal.signal(signal.SIGTERM, previous_handler)


if __name__ == "__main__":
    sys.exit(main())
