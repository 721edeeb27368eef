"""
Retry policy with exponential backoff.

RetryPolicy classifies an error as retryable or terminal and computes the
backoff delay for the next attempt. It is pure: the decision depends only on
(error, attempt). The retry_with_backoff decorator applies a policy to any
sync or async callable.
"""

import asyncio
import functools
import socket
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from shared.config import settings
from shared.errors import ErrorKind, RETRYABLE_KINDS, RetryableError, StageError
from shared.logging import get_logger

T = TypeVar("T")
logger = get_logger("retry")


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of consulting the retry policy after a failed attempt."""

    retry: bool
    delay: float
    kind: ErrorKind


@dataclass(frozen=True)
class RetryPolicy:
    """
    Decide whether a failed attempt should be retried.

    Args:
        max_attempts: Maximum attempts per stage, including the first (default: 3)
        base_delay: Delay in seconds before the second attempt (default: 2)
        max_delay: Cap on any single delay in seconds (default: 30)
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def classify(self, error: BaseException) -> ErrorKind:
        """Map an exception to an ErrorKind."""
        if isinstance(error, StageError):
            return error.kind
        if isinstance(error, RetryableError):
            return ErrorKind.TRANSIENT
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return ErrorKind.TIMEOUT
        # Other OSErrors (missing file, permissions) do not heal on retry
        if isinstance(error, (ConnectionError, socket.gaierror, socket.herror)):
            return ErrorKind.TRANSIENT
        return ErrorKind.UNKNOWN

    def is_retryable(self, error: BaseException) -> bool:
        return self.classify(error) in RETRYABLE_KINDS

    def backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt: base * 2^(attempt-1), capped."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def should_retry(self, error: BaseException, attempt: int) -> RetryDecision:
        """
        Decide whether to retry after `attempt` failed with `error`.

        Terminal kinds are never retried; retryable kinds are retried until
        max_attempts attempts have been made.
        """
        kind = self.classify(error)
        if kind not in RETRYABLE_KINDS or attempt >= self.max_attempts:
            return RetryDecision(retry=False, delay=0.0, kind=kind)
        return RetryDecision(retry=True, delay=self.backoff(attempt), kind=kind)


def retry_with_backoff(policy: Optional[RetryPolicy] = None):
    """
    Decorator for retrying functions according to a RetryPolicy.

    Example:
        @retry_with_backoff(RetryPolicy(max_attempts=3, base_delay=2))
        async def load_account():
            # Will retry on RetryableError / connection failures
            return await db.table("users").select("*").execute()
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> T:
                active = policy or RetryPolicy.from_settings()
                attempt = 1
                while True:
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        decision = active.should_retry(e, attempt)
                        if not decision.retry:
                            logger.error(
                                f"Giving up on {func.__name__} after {attempt} attempt(s)",
                                extra={"error": str(e), "attempt": attempt, "kind": decision.kind.value}
                            )
                            raise
                        logger.warning(
                            f"Retry attempt {attempt + 1}/{active.max_attempts} for {func.__name__} "
                            f"after {decision.delay}s delay",
                            extra={"error": str(e), "attempt": attempt + 1}
                        )
                        await asyncio.sleep(decision.delay)
                        attempt += 1

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            active = policy or RetryPolicy.from_settings()
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    decision = active.should_retry(e, attempt)
                    if not decision.retry:
                        logger.error(
                            f"Giving up on {func.__name__} after {attempt} attempt(s)",
                            extra={"error": str(e), "attempt": attempt, "kind": decision.kind.value}
                        )
                        raise
                    logger.warning(
                        f"Retry attempt {attempt + 1}/{active.max_attempts} for {func.__name__} "
                        f"after {decision.delay}s delay",
                        extra={"error": str(e), "attempt": attempt + 1}
                    )
                    time.sleep(decision.delay)
                    attempt += 1

        return sync_wrapper

    return decorator
