from __future__ import annotations

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from heroframe.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.3


def build_retrying(
    policy: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...],
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> Retrying:
    """Exponential backoff capped at ``policy.max_delay`` plus up to 30% jitter."""

    return Retrying(
        stop=stop_after_attempt(max(policy.max_attempts, 1)),
        wait=wait_exponential(multiplier=policy.base_delay, max=policy.max_delay)
        + wait_random(0, policy.base_delay * JITTER_RATIO),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True,
        sleep=sleep,
    )


def call_with_retry(
    func: Callable[[], T],
    *,
    policy: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...],
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``func`` retrying transient failures a bounded number of times."""

    try:
        return build_retrying(policy, retry_on, sleep=sleep)(func)
    except retry_on as exc:
        logger.warning("%s failed after %d attempts: %s", label, max(policy.max_attempts, 1), exc)
        raise


__all__ = ["build_retrying", "call_with_retry"]
