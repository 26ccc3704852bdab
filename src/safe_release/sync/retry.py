"""Transfer resilience utilities for Safe Release.

Retries remote transfers with exponential backoff and jitter so that a
transient storage hiccup does not fail a whole release.
"""

import logging
import random
import time
from collections.abc import Callable
from typing import Any, TypeVar

from safe_release.core.config import RetryConfig
from safe_release.core.exceptions import TransportError

T = TypeVar("T")

RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (TransportError,)


def compute_backoff_delay(config: RetryConfig, attempt: int) -> float:
    """Delay before retry number ``attempt + 1``.

    Backoff Formula:
        delay = min(base_delay * (exponential_base ** attempt), max_delay)
        if jitter: delay = delay * random.uniform(0.5, 1.5)
    """
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * random.uniform(0.5, 1.5)
    return max(0.0, delay)


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    retry: RetryConfig | None = None,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
    operation_name: str = "transfer",
    **kwargs: Any,
) -> T:
    """
    Execute a transfer with retry logic.

    Only ``RETRYABLE_EXCEPTIONS`` are retried; anything else propagates on
    the first failure.

    Args:
        func: The transfer function to call
        *args: Positional arguments to pass to the function
        retry: Retry configuration (defaults to RetryConfig())
        logger: Logger instance for retry messages
        operation_name: Human-readable name for logging
        **kwargs: Keyword arguments to pass to the function

    Returns:
        Result from the transfer call

    Raises:
        The last exception if all retries fail

    Example:
        call_with_retry(transport.upload, local, remote, retry=cfg, operation_name="upload")
    """
    _logger = logger or logging.getLogger(__name__)
    cfg = retry or RetryConfig()

    for attempt in range(cfg.max_retries + 1):  # +1 for initial attempt
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                _logger.info(f"{operation_name} succeeded on attempt {attempt + 1}/{cfg.max_retries + 1}")
            return result
        except RETRYABLE_EXCEPTIONS as e:
            if attempt == cfg.max_retries:
                if cfg.max_retries > 0:
                    _logger.error(f"All {cfg.max_retries + 1} attempts failed for {operation_name}")
                raise

            delay = compute_backoff_delay(cfg, attempt)
            _logger.warning(
                f"{operation_name} attempt {attempt + 1}/{cfg.max_retries + 1} failed: {e!s}. "
                f"Retrying in {delay:.1f}s..."
            )
            time.sleep(delay)

    # Unreachable: the last attempt always returns or raises.
    raise RuntimeError(f"Retry loop exited unexpectedly for {operation_name}")
