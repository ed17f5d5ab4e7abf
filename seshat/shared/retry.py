"""Retry policy shared by every remote-call path.

One :class:`RetryPolicy` describes how many attempts to make, how long to
wait between them and which errors are worth repeating. :func:`execute` runs
a callable under a policy. The vector store client, the embedding generator
and the migration coordinator each build their own policy instance instead of
carrying their own retry loops.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import random
import time
from typing import TypeVar

from seshat.shared.errors import RateLimitError, is_retryable_error
from seshat.shared.utils.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")

BackoffFn = Callable[[int, BaseException, "RetryPolicy"], float]


def exponential_backoff(attempt: int, error: BaseException, policy: "RetryPolicy") -> float:
    """``base_delay × multiplier^(attempt-1)`` capped at ``max_delay``, plus jitter.

    Jitter is drawn uniformly from ``[0, jitter × delay]``.
    """
    _ = error
    delay = min(policy.base_delay * (policy.multiplier ** (attempt - 1)), policy.max_delay)
    if policy.jitter > 0:
        delay += random.uniform(0, policy.jitter * delay)  # noqa: S311 - jitter, not crypto
    return delay


def linear_backoff(attempt: int, error: BaseException, policy: "RetryPolicy") -> float:
    """``base_delay × attempt`` capped at ``max_delay``."""
    _ = error
    return min(policy.base_delay * attempt, policy.max_delay)


def rate_limit_aware_backoff(attempt: int, error: BaseException, policy: "RetryPolicy") -> float:
    """Exponential backoff on rate-limit errors, linear backoff otherwise.

    Rate-limit waits start at ``base_delay`` and double up to
    ``rate_limit_max_delay``.
    """
    if isinstance(error, RateLimitError) or "RATE_LIMIT" in str(error) or "429" in str(error):
        return min(policy.base_delay * (2 ** (attempt - 1)), policy.rate_limit_max_delay)
    return linear_backoff(attempt, error, policy)


@dataclass(frozen=True)
class RetryPolicy:
    """Parameters for :func:`execute`.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound for a single delay.
        multiplier: Growth factor for exponential backoff.
        jitter: Fraction of the delay added as random jitter.
        rate_limit_max_delay: Cap used by :func:`rate_limit_aware_backoff`.
        retryable: Predicate deciding whether an error is worth another attempt.
        backoff: Function computing the delay after a failed attempt.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.1
    rate_limit_max_delay: float = 32.0
    retryable: Callable[[BaseException], bool] = field(default=is_retryable_error)
    backoff: BackoffFn = field(default=exponential_backoff)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"max_attempts must be at least 1, got {self.max_attempts}"
            raise ValueError(msg)
        if self.base_delay < 0 or self.max_delay < 0:
            msg = "Retry delays must be non-negative"
            raise ValueError(msg)

    def delay_for(self, attempt: int, error: BaseException) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        return max(0.0, self.backoff(attempt, error, self))


def store_policy(attempts: int = 3, base_delay: float = 1.0, max_delay: float = 10.0) -> RetryPolicy:
    """Per-call policy of the vector store client: exponential with 10% jitter."""
    return RetryPolicy(max_attempts=attempts, base_delay=base_delay, max_delay=max_delay, jitter=0.1)


def embedding_policy(attempts: int = 3, base_delay: float = 1.0, max_delay: float = 32.0) -> RetryPolicy:
    """Per-item policy of the embedding generator.

    Every error is retried; rate limits back off exponentially, other errors linearly.
    """
    return RetryPolicy(
        max_attempts=attempts,
        base_delay=base_delay,
        max_delay=max_delay,
        jitter=0.0,
        rate_limit_max_delay=max_delay,
        retryable=lambda _e: True,
        backoff=rate_limit_aware_backoff,
    )


def execute(
    fn: Callable[[], T],
    policy: RetryPolicy,
    operation: str = "",
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    logger_instance: logging.Logger | logging.LoggerAdapter | None = None,
) -> T:
    """Call ``fn`` until it succeeds, fails permanently or runs out of attempts.

    Args:
        fn: Zero-argument callable performing one attempt.
        policy: Retry policy to apply.
        operation: Name used in log messages.
        sleep: Sleep function (injectable for tests).
        on_retry: Optional hook called as ``on_retry(attempt, error, delay)``
            before each wait.
        logger_instance: Logger for retry warnings.

    Returns:
        The value returned by the first successful attempt.

    Raises:
        BaseException: The last error, unchanged, when it is not retryable or
            the attempt cap is reached.
    """
    log = logger_instance or logger
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as e:
            if attempt >= policy.max_attempts or not policy.retryable(e):
                raise
            delay = policy.delay_for(attempt, e)
            log.warning(
                "%s attempt %d/%d failed: %s. Retrying in %.2fs",
                operation or "call",
                attempt,
                policy.max_attempts,
                e,
                delay,
                extra={"operation": operation, "retry_attempt": attempt, "delay_seconds": delay},
            )
            if on_retry:
                on_retry(attempt, e, delay)
            sleep(delay)
            attempt += 1
