"""Retry Policy: bounded exponential backoff around one adapter call.

Only rate-limit errors are retried locally:

  delay = min(base * 2^attempt (+ jitter), max_delay)     # 1s, 2s, 4s ...

Everything else propagates on the first failure. For streams, a retry is only
possible while nothing has been handed to the caller yet.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from tiergate.core.exceptions import UpstreamError, UpstreamRateLimited
from tiergate.core.metrics import UPSTREAM_RETRIES

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class RetryPolicy:
    """Retry configuration plus the loops that apply it."""

    max_retries: int = 3  # additional tries beyond the first
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = False
    retry_on: tuple[type[UpstreamError], ...] = (UpstreamRateLimited,)
    sleep: SleepFn = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings) -> RetryPolicy:
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)

    def calculate_backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (``attempt`` is 0-based)."""
        delay = self.base_delay * (2**attempt)
        if self.jitter:
            delay += random.uniform(0, self.base_delay * 0.5)
        return min(delay, self.max_delay)

    async def _backoff(self, exc: UpstreamError, attempt: int, label: str) -> None:
        delay = self.calculate_backoff(attempt)
        UPSTREAM_RETRIES.labels(backend=exc.backend or "unknown").inc()
        logger.info(
            "%s rate limited, retrying in %.1fs (attempt %d/%d)",
            label,
            delay,
            attempt + 1,
            self.max_retries + 1,
        )
        await self.sleep(delay)

    async def run(self, call: Callable[[], Awaitable[T]], label: str = "upstream") -> T:
        """Await ``call()`` with retries; re-raise the last error when exhausted."""
        attempt = 0
        while True:
            try:
                return await call()
            except UpstreamError as exc:
                if not self.is_retryable(exc) or attempt >= self.max_retries:
                    raise
                await self._backoff(exc, attempt, label)
                attempt += 1

    async def stream(self, open_stream: Callable[[], AsyncIterator[str]], label: str = "upstream") -> AsyncIterator[str]:
        """Iterate a fresh stream, retrying only failures before the first chunk."""
        attempt = 0
        while True:
            source = open_stream()
            emitted = False
            try:
                async for chunk in source:
                    emitted = True
                    yield chunk
                return
            except UpstreamError as exc:
                if emitted or not self.is_retryable(exc) or attempt >= self.max_retries:
                    raise
                failure = exc
            finally:
                aclose = getattr(source, "aclose", None)
                if aclose is not None:
                    await aclose()
            await self._backoff(failure, attempt, label)
            attempt += 1
