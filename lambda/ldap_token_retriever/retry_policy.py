"""Exponential backoff with jitter around whole operations."""

import os
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

from aws_lambda_powertools import Logger

logger = Logger(service="ldap-token-retriever")

MAX_JITTER_MS = 1000

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 5
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2
    max_delay_ms: int = 30000

    @classmethod
    def from_env(cls) -> "RetryConfig":
        """Build a config from MAX_RETRIES, BASE_DELAY_MS, BACKOFF_MULTIPLIER and MAX_DELAY_MS."""
        defaults = cls()
        return cls(
            max_retries=int(os.environ.get("MAX_RETRIES", defaults.max_retries)),
            base_delay_ms=int(os.environ.get("BASE_DELAY_MS", defaults.base_delay_ms)),
            backoff_multiplier=float(
                os.environ.get("BACKOFF_MULTIPLIER", defaults.backoff_multiplier)
            ),
            max_delay_ms=int(os.environ.get("MAX_DELAY_MS", defaults.max_delay_ms)),
        )


def compute_delay_ms(
    attempt: int, config: RetryConfig, jitter: Optional[float] = None
) -> float:
    """
    Delay before retrying after the given zero-based attempt:
    ``min(base * multiplier ** attempt, max_delay) + jitter`` with
    ``0 <= jitter < 1000``.
    """
    if jitter is None:
        jitter = random.random() * MAX_JITTER_MS
    backoff = config.base_delay_ms * (config.backoff_multiplier**attempt)
    return min(backoff, config.max_delay_ms) + jitter


def with_retry(
    operation: Callable[[], T],
    operation_name: str,
    context: Optional[Dict[str, Any]] = None,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``operation`` up to ``config.max_retries + 1`` times.

    Every attempt, failure and the final exhaustion is logged with the
    operation name and context. The last error is re-raised unchanged once
    all attempts are used up.
    """
    config = config or RetryConfig()
    context = context or {}
    total_attempts = max(config.max_retries, 0) + 1

    for attempt in range(total_attempts):
        logger.info(
            f"Attempting {operation_name}",
            operation=operation_name,
            attempt=attempt + 1,
            max_attempts=total_attempts,
            **context,
        )
        try:
            result = operation()
        except Exception as e:
            if attempt + 1 >= total_attempts:
                logger.error(
                    f"{operation_name} failed after {total_attempts} attempts",
                    operation=operation_name,
                    attempts=total_attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                    **context,
                )
                raise

            delay_ms = compute_delay_ms(attempt, config)
            logger.warning(
                f"{operation_name} failed, retrying",
                operation=operation_name,
                attempt=attempt + 1,
                delay_ms=round(delay_ms),
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            sleep(delay_ms / 1000)
            continue

        if attempt > 0:
            logger.info(
                f"{operation_name} succeeded after retry",
                operation=operation_name,
                attempt=attempt + 1,
                **context,
            )
        return result

    raise RuntimeError(f"{operation_name} exhausted retries")
