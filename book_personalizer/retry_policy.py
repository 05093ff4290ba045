import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from loguru import logger

from .cancellation import CancellationToken, pause
from .exceptions import ConfigurationError, ContractViolationError, RunCancelledError
from .rate_limiter import RateLimiter, Sleep

T = TypeVar('T')

NETWORK_ERROR_MARKERS = (
    'econnreset', 'etimedout', 'enotfound', 'network',
    'connection reset', 'connection aborted', 'timed out', 'timeout',
    'name or service not known', 'temporary failure in name resolution',
    'failed to resolve',
)
TRANSIENT_ERROR_MARKERS = (
    'internal server error', 'service unavailable', 'gateway timeout',
    'temporarily unavailable', 'overloaded',
)
OVERLOAD_MARKERS = ('service unavailable', 'overloaded', 'rate limit', 'resource_exhausted', 'quota')

# Never retried and never turned into a fallback result.
PROPAGATING_ERRORS = (ContractViolationError, RunCancelledError, ConfigurationError)


def status_of(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status for an exception raised by a remote call."""
    for attr in ('status_code', 'status', 'code'):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    if '500' in str(error):
        return 500
    return None


class RetryPolicy:
    """Retry classification and exponential backoff with jitter."""

    def __init__(self,
                 max_retries: int = 5,
                 base_delay_ms: float = 3000,
                 max_jitter_ms: float = 2000,
                 rng: Optional[random.Random] = None):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_jitter_ms = max_jitter_ms
        self._rng = rng or random.Random()

    def is_retryable(self, error: BaseException, status_code: Optional[int] = None) -> bool:
        if status_code is not None and 500 <= status_code < 600:
            return True
        if status_code == 429:
            return True

        message = str(error).lower()
        if any(marker in message for marker in NETWORK_ERROR_MARKERS):
            return True
        if any(marker in message for marker in TRANSIENT_ERROR_MARKERS):
            return True

        if status_code is not None and 400 <= status_code < 500:
            return False

        # Unknown errors are treated as transient
        return True

    def is_overload(self, error: BaseException, status_code: Optional[int] = None) -> bool:
        if status_code in (429, 503):
            return True
        message = str(error).lower()
        return any(marker in message for marker in OVERLOAD_MARKERS)

    def compute_delay(self,
                      attempt: int,
                      base_delay_ms: Optional[float] = None,
                      is_overload: bool = False,
                      current_delay_ms: float = 0) -> float:
        """Full suspension (ms) before the attempt following ``attempt``."""
        base = self.base_delay_ms if base_delay_ms is None else base_delay_ms
        if is_overload:
            base = max(base, current_delay_ms)
        delay = base * 2 ** (attempt - 1)
        return delay + self._rng.uniform(0, self.max_jitter_ms)


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    value: T
    attempts: int
    succeeded: bool
    error: Optional[str] = None


async def with_retry(operation: Callable[[int], Awaitable[T]],
                     policy: RetryPolicy,
                     fallback: Callable[[BaseException], T],
                     label: str = "remote call",
                     rate_limiter: Optional[RateLimiter] = None,
                     token: Optional[CancellationToken] = None,
                     sleep: Sleep = pause) -> RetryOutcome[T]:
    """Run ``operation`` under ``policy``; never raises for remote failures.

    ``operation`` receives the 1-based attempt number. After a non-retryable
    error or the last attempt, ``fallback(error)`` supplies the value.
    """
    for attempt in range(1, policy.max_retries + 1):
        if token is not None:
            token.raise_if_cancelled()
        if rate_limiter is not None:
            await rate_limiter.wait_before_request(token)

        try:
            value = await operation(attempt)
        except PROPAGATING_ERRORS:
            raise
        except Exception as e:
            status = status_of(e)
            retryable = policy.is_retryable(e, status)
            overload = policy.is_overload(e, status)

            logger.error(f"{label} failed (attempt {attempt}/{policy.max_retries}): {e}")
            if status is not None:
                logger.error(f"   Error status: {status}")

            if overload and rate_limiter is not None:
                rate_limiter.on_overload()

            if not retryable or attempt == policy.max_retries:
                if not retryable:
                    logger.warning(f"Non-retryable error in {label}, using fallback")
                else:
                    logger.warning(f"Using fallback for {label} after {policy.max_retries} failed attempts")
                return RetryOutcome(value=fallback(e), attempts=attempt, succeeded=False, error=str(e))

            current = rate_limiter.current_delay_ms if rate_limiter is not None else 0
            delay = policy.compute_delay(attempt, is_overload=overload, current_delay_ms=current)
            logger.info(f"Waiting {delay:.0f}ms before retrying {label}...")
            await sleep(delay, token)
            continue

        if rate_limiter is not None:
            rate_limiter.on_success()
        if attempt > 1:
            logger.info(f"{label} succeeded after {attempt} attempts")
        return RetryOutcome(value=value, attempts=attempt, succeeded=True)

    # Unreachable: the last attempt always returns above
    raise RuntimeError(f"{label}: retry loop exited without a result")
