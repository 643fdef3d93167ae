import asyncio
from typing import Any, Awaitable, Callable, Iterator, Optional, Tuple, Type

from loguru import logger
from platform_client.errors import DelayTimeoutError
from platform_client.models import BackoffConfig
from platform_client.utils import maybe_await


class BackoffScheduler:
    """Computes capped exponential delays bounded by a total deadline.

    Holds no per-use state, so a single instance can be shared by any number
    of concurrent polling loops.
    """

    def __init__(self, config: Optional[BackoffConfig] = None):
        self.config = config or BackoffConfig()

    @classmethod
    def fixed(cls, delay: float, max_elapsed: float) -> "BackoffScheduler":
        return cls(
            BackoffConfig(
                initial_delay=delay,
                max_delay=delay,
                max_elapsed=max_elapsed,
                backoff_factor=1.0,
            )
        )

    @classmethod
    def instant(cls, max_elapsed: float) -> "BackoffScheduler":
        return _InstantScheduler(BackoffConfig(max_elapsed=max_elapsed))

    @property
    def max_elapsed(self) -> float:
        return self.config.max_elapsed

    def next(self, attempt: int) -> float:
        """Returns the delay to wait before retry number `attempt` (0-based)"""
        if attempt < 0:
            raise ValueError(f"attempt must be non-negative, got {attempt}")
        try:
            delay = self.config.initial_delay * self.config.backoff_factor**attempt
        except OverflowError:
            return self.config.max_delay
        return min(delay, self.config.max_delay)

    def has_expired(self, start: float, now: float) -> bool:
        return now - start >= self.config.max_elapsed

    def remaining(self, start: float, now: float) -> float:
        return max(0.0, self.config.max_elapsed - (now - start))

    def with_max_elapsed(self, max_elapsed: float) -> "BackoffScheduler":
        return type(self)(
            BackoffConfig.model_validate(
                {**self.config.model_dump(), "max_elapsed": max_elapsed}
            )
        )

    def delays(self) -> Iterator[float]:
        attempt = 0
        while True:
            yield self.next(attempt)
            attempt += 1

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(initial_delay={self.config.initial_delay}, "
            f"max_delay={self.config.max_delay}, max_elapsed={self.config.max_elapsed})"
        )


class _InstantScheduler(BackoffScheduler):
    def next(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError(f"attempt must be non-negative, got {attempt}")
        return 0.0


async def wait_until(
    condition: Callable[[], Any],
    scheduler: Optional[BackoffScheduler] = None,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (),
    clock: Optional[Callable[[], float]] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> Any:
    """Polls `condition` until it returns a truthy value, backing off between attempts.

    `condition` may be a plain callable or a coroutine function. Exceptions of
    the types in `retry_on` are treated like a falsy result; anything else
    propagates. Raises DelayTimeoutError once the scheduler's deadline passes.
    """
    scheduler = scheduler or BackoffScheduler()
    clock = clock or asyncio.get_event_loop().time
    sleep = sleep or asyncio.sleep

    start = clock()
    attempt = 0
    while not scheduler.has_expired(start, clock()):
        try:
            result = await maybe_await(condition())
        except retry_on as e:
            logger.warning(f"Condition raised {type(e).__name__}: {e}, retrying")
            result = None

        if result:
            return result

        delay = min(scheduler.next(attempt), scheduler.remaining(start, clock()))
        logger.debug(f"Condition not met, waiting {delay:.2f}s before next attempt")
        await sleep(delay)
        attempt += 1

    raise DelayTimeoutError(
        f"Condition not met within {scheduler.max_elapsed} seconds"
    )
