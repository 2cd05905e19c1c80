"""Bounded retry with exponential backoff for flaky external calls."""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from ...config import MillConfig
from ...errors import ExternalCallError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ExternalCallError,
    OSError,
    subprocess.SubprocessError,
    TimeoutError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry a transient failure.

    Attributes:
        attempts: Total attempts, including the first call.
        delay: Seconds to wait after the first failure.
        factor: Multiplier applied to the delay after each further failure.
        retry_on: Exception types considered transient. Anything else propagates
            immediately.
    """

    attempts: int = 3
    delay: float = 2.0
    factor: float = 2.0
    retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS

    @classmethod
    def from_config(cls, config: MillConfig) -> "RetryPolicy":
        return cls(attempts=config.max_retries, delay=config.retry_delay)


def call_with_retry(
    fn: Callable[..., T],
    *args: object,
    policy: RetryPolicy,
    what: str,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: object,
) -> T:
    """Call ``fn`` until it succeeds or ``policy.attempts`` is exhausted.

    Args:
        fn (Callable[..., T]): Operation to run.
        policy (RetryPolicy): Attempt count, backoff, and retryable exception types.
        what (str): Human-readable label used in log lines.
        sleep (Callable[[float], None]): Sleep function, injectable for tests.

    Returns:
        T: Whatever ``fn`` returned on its first successful attempt.

    Raises:
        RetryExhaustedError: If every attempt raised a retryable exception.
    """
    attempts = max(1, policy.attempts)
    delay = policy.delay
    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn(*args, **kwargs)
        except policy.retry_on as exc:
            last_error = exc
            if attempt < attempts:
                logger.warning("%s failed (attempt %d/%d), retrying in %.1fs: %s", what, attempt, attempts, delay, exc)
                sleep(delay)
                delay *= policy.factor
    assert last_error is not None
    logger.error("%s failed after %d attempt(s): %s", what, attempts, last_error)
    raise RetryExhaustedError(what, attempts, last_error) from last_error
