"""Logging helpers for Safe Release."""

import atexit
import contextlib
import json
import logging
import os
import re
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from safe_release.core.colors import format_status_tag
from safe_release.core.constants import LOG_FILE_BACKUP_COUNT, LOG_FILE_MAX_BYTES, LOG_LEVELS

_LOG_RECORD_RESERVED_FIELDS = set(logging.makeLogRecord({}).__dict__.keys()) | {"message", "asctime", "extra_fields"}
_REDACTED_VALUE = "[REDACTED]"
_SENSITIVE_FIELD_NAMES = {
    "password",
    "secret",
    "token",
    "access_token",
    "api_key",
    "authorization",
    "private_key",
    "credentials",
}
# Signed object-storage URLs carry their credential in the query string.
_SIGNED_URL_PARAM_PATTERN = re.compile(
    r"(?i)(?P<key>[?&](?:x-goog-signature|x-goog-credential|x-amz-signature|x-amz-credential|"
    r"x-amz-security-token|signature|sig|token|access_token))=(?P<value>[^&\s\"']+)"
)
_SENSITIVE_KEY_VALUE_PATTERN = re.compile(
    r"(?i)(?P<key>(?<![A-Za-z0-9_])(?:password|secret|token|api[_-]?key|private[_-]?key)(?![A-Za-z0-9_]))"
    r"(?P<separator>\s*[:=]\s*)(?P<value>[^,\s;}\]]+)"
)
_GENERIC_BEARER_PATTERN = re.compile(r"(?i)\b(bearer)\s+([A-Za-z0-9._~+/=-]+)")


def _safe_record_message(record: logging.LogRecord) -> str:
    try:
        return record.getMessage()
    except Exception:
        # Keep logging resilient when message formatting fails (bad placeholders or broken __str__).
        return f"{getattr(record, 'msg', '')} [log-message-format-error]"


def _is_reserved_or_private_record_key(key: object) -> bool:
    if not isinstance(key, str):
        return True
    return key in _LOG_RECORD_RESERVED_FIELDS or key.startswith("_")


def _is_sensitive_field(name: str) -> bool:
    normalized = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    if normalized in _SENSITIVE_FIELD_NAMES:
        return True
    parts = normalized.split("_")
    return "secret" in parts or "token" in parts or "password" in parts


def redact_message(message: str) -> str:
    """Redact credential-like values from a free-form message."""
    redacted = _SIGNED_URL_PARAM_PATTERN.sub(lambda m: f"{m.group('key')}={_REDACTED_VALUE}", message)
    redacted = _SENSITIVE_KEY_VALUE_PATTERN.sub(
        lambda m: f"{m.group('key')}{m.group('separator')}{_REDACTED_VALUE}", redacted
    )
    return _GENERIC_BEARER_PATTERN.sub(lambda m: f"{m.group(1)} {_REDACTED_VALUE}", redacted)


def _redact_value(value: object) -> object:
    if isinstance(value, dict):
        return {
            key: _REDACTED_VALUE if _is_sensitive_field(str(key)) else _redact_value(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact_value(item) for item in value)
    if isinstance(value, str):
        return redact_message(value)
    return value


class SensitiveDataFilter(logging.Filter):
    """Best-effort redaction for sensitive values in log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_message(_safe_record_message(record))
        record.args = ()
        for key, value in list(record.__dict__.items()):
            if _is_reserved_or_private_record_key(key):
                continue
            if _is_sensitive_field(key):
                record.__dict__[key] = _REDACTED_VALUE
                continue
            with contextlib.suppress(Exception):
                record.__dict__[key] = _redact_value(value)
        return True


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging output.

    Produces JSON lines suitable for CI log aggregation.
    Each log record is a single JSON object on one line.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": _safe_record_message(record),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "process": record.process,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Custom LogRecord attributes set via logging's `extra` (resource_name, lock_id, ...)
        for key, value in record.__dict__.items():
            if _is_reserved_or_private_record_key(key):
                continue
            log_entry.setdefault(key, value)

        return json.dumps(log_entry, default=str)


class StatusFormatter(logging.Formatter):
    """Console formatter emitting ``[TAG] message`` lines."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{format_status_tag(record)} {_safe_record_message(record)}"
        if record.exc_info and record.levelno <= logging.DEBUG:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class ContextLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges contextual fields into record extras."""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = kwargs.get("extra")
        merged_extra = dict(self.extra)
        if isinstance(extra, dict):
            merged_extra.update(extra)
        kwargs["extra"] = merged_extra
        return msg, kwargs


def _unwrap_logger(logger: logging.Logger | logging.LoggerAdapter | None) -> logging.Logger | None:
    current = logger
    while isinstance(current, logging.LoggerAdapter):
        current = current.logger
    if isinstance(current, logging.Logger):
        return current
    return None


def with_log_context(
    logger: logging.Logger | logging.LoggerAdapter, **context: object
) -> logging.Logger | logging.LoggerAdapter:
    """Return a logger enriched with persistent contextual fields."""
    base_logger = _unwrap_logger(logger)
    if base_logger is None:
        return logger

    existing_context = {}
    if isinstance(logger, logging.LoggerAdapter):
        existing_context = dict(getattr(logger, "extra", {}) or {})
    existing_context.update({k: v for k, v in context.items() if v is not None})
    return ContextLoggerAdapter(base_logger, existing_context)


# Module-level tracking to prevent duplicate atexit registration
_atexit_registered = False


def setup_logging(
    resource_name: str | None = None,
    log_level: str | None = None,
    log_format: str = "text",
    log_dir: str | None = None,
) -> logging.Logger:
    """Setup logging to console and, optionally, a rotating log file.

    Args:
        resource_name: Platform tag used for log file naming
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format - "text" (default) or "json" for structured logging
        log_dir: Directory for log files; None logs to console only

    Returns:
        Configured logger instance

    Priority: 1) Passed parameter, 2) Environment variable LOG_LEVEL, 3) Default INFO
    """
    global _atexit_registered

    if not _atexit_registered:
        atexit.register(logging.shutdown)
        _atexit_registered = True

    if log_level is None:
        log_level = os.environ.get("LOG_LEVEL", "INFO")
    if log_level.upper() not in LOG_LEVELS:
        print(f"Warning: Invalid log level '{log_level}', using INFO", file=sys.stderr)
        log_level = "INFO"
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    log_file = None
    if log_dir is not None:
        try:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
            log_file = Path(log_dir) / f"release_{resource_name or 'unknown'}_{timestamp}.log"
        except OSError as e:
            print(f"Warning: Cannot create log directory: {e}. Logging to console only.", file=sys.stderr)

    for handler in logging.root.handlers[:]:
        handler.close()
        logging.root.removeHandler(handler)

    # Status lines go to stderr so stdout stays clean for --show-* output
    console = logging.StreamHandler(sys.stderr)
    handlers: list[logging.Handler] = [console]
    if log_file is not None:
        handlers.append(RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUP_COUNT))

    for handler in handlers:
        if log_format.lower() == "json":
            handler.setFormatter(JSONFormatter())
        elif handler is console:
            handler.setFormatter(StatusFormatter())
        else:
            handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
        handler.setLevel(numeric_level)
        handler.addFilter(SensitiveDataFilter())
        logging.root.addHandler(handler)

    logging.root.setLevel(numeric_level)

    logger = logging.getLogger("safe_release")
    logger.propagate = True
    logger.setLevel(logging.NOTSET)

    if log_file is not None:
        logger.debug(f"Logging initialized. Log file: {log_file}")
    return logger
