"""Timer and retry primitives shared by the agent loops.

Everything that waits goes through a ``Clock`` so tests can swap in a
virtual one and run hours of schedule in microseconds.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from .state import utc_now


logger = logging.getLogger("tweetgate.autonomy")


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError

    def monotonic(self) -> float:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return utc_now()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


@dataclass(frozen=True)
class BackoffPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def fixed(cls, attempts: int, delay: float) -> "BackoffPolicy":
        return cls(attempts=attempts, base_delay=delay, multiplier=1.0, max_delay=delay)

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1 is the first retry)."""
        exponent = max(0, retry_number - 1)
        return min(self.max_delay, self.base_delay * (self.multiplier ** exponent))


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    policy: BackoffPolicy,
    clock: Clock,
    *,
    label: str,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
) -> Any:
    if policy.attempts < 1:
        raise ValueError(f"{label}: backoff policy needs at least one attempt, got {policy.attempts}")
    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await func()
        except give_up_on:
            raise
        except retry_on as e:
            last_error = e
            if attempt >= policy.attempts:
                break
            delay = max(policy.delay_for(attempt), float(getattr(e, "retry_after", 0) or 0))
            logger.warning(
                "Retrying %s attempt=%s/%s delay_seconds=%.2f error=%s",
                label,
                attempt,
                policy.attempts,
                delay,
                e,
            )
            await clock.sleep(delay)
    raise last_error


class PeriodicTask:
    """Cancellable timer that runs ``callback`` every ``[interval_min, interval_max]`` seconds.

    Errors raised by the callback are logged and the schedule continues.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Any],
        interval_min: float,
        interval_max: Optional[float] = None,
        *,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        run_immediately: bool = False,
    ):
        self.name = name
        self.callback = callback
        self.interval_min = max(0.0, float(interval_min))
        self.interval_max = max(self.interval_min, float(interval_max if interval_max is not None else interval_min))
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.run_immediately = run_immediately
        self.runs = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    def next_delay(self) -> float:
        if self.interval_max <= self.interval_min:
            return self.interval_min
        return self.rng.uniform(self.interval_min, self.interval_max)

    async def run_once(self) -> None:
        try:
            result = self.callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.exception("Periodic task failed task=%s error=%s", self.name, e)
        finally:
            self.runs += 1

    async def _run(self) -> None:
        if self.run_immediately and not self._stopped:
            await self.run_once()
        while not self._stopped:
            delay = self.next_delay()
            logger.debug("Sleeping seconds=%.1f task=%s", delay, self.name)
            await self.clock.sleep(delay)
            if self._stopped:
                break
            await self.run_once()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopped = False
            self._task = asyncio.ensure_future(self._run())
        return self._task

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


class RequestQueue:
    """Serializes every platform call with a randomized gap and exponential backoff.

    Blocking callables run in a worker thread so the event loop keeps turning.
    """

    def __init__(
        self,
        *,
        delay_min: float = 1.5,
        delay_max: float = 3.5,
        backoff: Optional[BackoffPolicy] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        non_retryable: Tuple[Type[BaseException], ...] = (),
    ):
        self.delay_min = max(0.0, delay_min)
        self.delay_max = max(self.delay_min, delay_max)
        self.backoff = backoff or BackoffPolicy(attempts=4, base_delay=1.0, multiplier=2.0, max_delay=60.0)
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.non_retryable = non_retryable
        self._lock = asyncio.Lock()
        self.calls = 0

    def _gap(self) -> float:
        if self.delay_max <= self.delay_min:
            return self.delay_min
        return self.rng.uniform(self.delay_min, self.delay_max)

    async def _invoke(self, func: Callable[..., Any], args: Tuple[Any, ...], kwargs: Any) -> Any:
        if inspect.iscoroutinefunction(func):
            return await func(*args, **kwargs)
        return await asyncio.to_thread(func, *args, **kwargs)

    async def submit(
        self,
        label: str,
        func: Callable[..., Any],
        *args: Any,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        **kwargs: Any,
    ) -> Any:
        """Run ``func`` after the previous call finished. ``retry_on`` narrows what is retried for writes."""
        async with self._lock:
            self.calls += 1
            try:
                return await retry_async(
                    lambda: self._invoke(func, args, kwargs),
                    self.backoff,
                    self.clock,
                    label=label,
                    retry_on=retry_on,
                    give_up_on=self.non_retryable,
                )
            finally:
                await self.clock.sleep(self._gap())
