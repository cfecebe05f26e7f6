"""Throttling for auxiliary (non-critical) LLM calls.

A RateLimiter serialises submitted coroutines through one FIFO queue and
keeps at least `min_interval` seconds between the start of consecutive
calls. When a queued call fails with a provider quota error (its message
contains "429") the limiter disables itself for `cooldown` seconds: every
add_request made in that window raises RateLimiterDisabled without running
anything. After the window it re-enables on the next call.

The queue and the disabled-until timestamp are plain attributes mutated from
the event loop only. They are not safe to share across OS threads.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MIN_INTERVAL = 3.0
DEFAULT_COOLDOWN = 300.0


class RateLimiterDisabled(RuntimeError):
    """Raised by add_request while the limiter is cooling down."""


class RateLimiter:
    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        cooldown: float = DEFAULT_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str = "limiter",
    ) -> None:
        self.min_interval = min_interval
        self.cooldown = cooldown
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._queue: deque[tuple[Callable[[], Awaitable[Any]], asyncio.Future]] = deque()
        self._worker: asyncio.Task | None = None
        self._last_start: float | None = None
        self._disabled = False
        self._disabled_until = 0.0

    @property
    def disabled(self) -> bool:
        return self._disabled and self._clock() < self._disabled_until

    @property
    def pending(self) -> int:
        return len(self._queue)

    def disable(self, seconds: float | None = None) -> None:
        """Disable the limiter for `seconds` (default: the cooldown)."""
        if seconds is None:
            seconds = self.cooldown
        self._disabled = True
        self._disabled_until = self._clock() + seconds
        logger.info("%s manually disabled for %ss", self.name, seconds)

    async def add_request(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Queue `fn` and wait for its result.

        Raises RateLimiterDisabled immediately while cooling down; otherwise
        propagates whatever `fn` raises.
        """
        if self._disabled:
            if self._clock() < self._disabled_until:
                raise RateLimiterDisabled(f"{self.name} temporarily disabled")
            self._disabled = False
            logger.info("%s re-enabled", self.name)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.append((fn, future))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_queue())
        return await future

    async def _process_queue(self) -> None:
        while self._queue:
            if self._last_start is not None:
                wait = self.min_interval - (self._clock() - self._last_start)
                if wait > 0:
                    await self._sleep(wait)

            fn, future = self._queue.popleft()
            if future.cancelled():
                continue
            self._last_start = self._clock()
            try:
                result = await fn()
            except Exception as e:
                if "429" in str(e):
                    self._disabled = True
                    self._disabled_until = self._clock() + self.cooldown
                    logger.warning(
                        "%s disabled for %ss after rate-limit error", self.name, self.cooldown
                    )
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)


@dataclass
class AuxiliaryLimiters:
    """The two independent budgets for ancillary LLM features."""

    voice_selection: RateLimiter = field(
        default_factory=lambda: RateLimiter(name="voice_selection")
    )
    story_recap: RateLimiter = field(
        default_factory=lambda: RateLimiter(name="story_recap")
    )

    @classmethod
    def build(cls, min_interval: float, cooldown: float) -> AuxiliaryLimiters:
        return cls(
            voice_selection=RateLimiter(min_interval, cooldown, name="voice_selection"),
            story_recap=RateLimiter(min_interval, cooldown, name="story_recap"),
        )
