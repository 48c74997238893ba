"""
Retry and polling policies.

- ``with_exec_retry`` retries read-only remote execs that failed at the
  transport level, with exponential backoff and jitter.
- ``PollPolicy`` bounds the failover convergence loop. Its sleep function is
  injectable so tests can run the loop against a fake clock.

Neither policy is used for the failover command itself, which is sent once.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from kuberedis.errors import ExecFailure, ExecTransportError

RETRYABLE_EXCEPTIONS = (ExecTransportError,)


def backoff_delay(retry: int, base_delay: float) -> float:
    """Seconds to wait before retry number ``retry`` (0-based): doubling, plus up to 10% jitter."""
    backoff = base_delay * (2 ** retry)
    return backoff + random.uniform(0, 0.1 * backoff)


def _target(error: ExecFailure) -> str:
    """Where a failed exec was headed, e.g. ``'redis-cli -p 6379 PING' in redis-0``."""
    where = error.pod or "unknown pod"
    if error.container:
        where += f"/{error.container}"
    if not error.command:
        return f"exec in {where}"
    return f"{' '.join(error.command)!r} in {where}"


def with_exec_retry(
    max_retries: int = 2,
    base_delay: float = 0.2,
    logger: Optional[logging.Logger] = None,
) -> Callable:
    """
    Decorator retrying an async exec on transport errors.

    Pod-not-found, non-zero exit and Redis error replies are not retried:
    they describe the target, not the channel used to reach it. Log lines
    name the pod and the (redacted) command that failed.

    Args:
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry in seconds (doubles each retry)
        logger: Logger for retry messages

    Example:
        @with_exec_retry(max_retries=3)
        async def cluster_nodes():
            ...
    """
    log = logger or logging.getLogger("ExecRetry")
    attempts = max_retries + 1

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            retry = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except RETRYABLE_EXCEPTIONS as e:
                    if retry >= max_retries:
                        log.error(f"Giving up on {_target(e)} after {attempts} attempts: {e}")
                        raise
                    delay = backoff_delay(retry, base_delay)
                    log.warning(
                        f"Transport error on {_target(e)} "
                        f"(attempt {retry + 1}/{attempts}), retrying in {delay:.2f}s"
                    )
                    retry += 1
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


@dataclass
class PollPolicy:
    """
    Bounded polling schedule for failover convergence.

    Attributes:
        max_attempts: Maximum number of polls
        interval: Seconds to wait before every poll except the first
        sleep: Awaitable sleep function (``asyncio.sleep`` unless faked)
    """
    max_attempts: int = 30
    interval: float = 1.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval < 0:
            raise ValueError("interval must not be negative")

    async def attempts(self) -> AsyncIterator[int]:
        """
        Yield poll numbers 1..max_attempts, sleeping between them.

        Cancelling the surrounding task interrupts the sleep.
        """
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                await self.sleep(self.interval)
            yield attempt
