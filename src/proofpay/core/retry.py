"""Exponential backoff for calls to external dependencies (chain RPC, store)."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger("proofpay.retry")


@dataclass(frozen=True)
class Backoff:
    """Delay schedule: ``base * 2**attempt`` capped at ``maximum``, with jitter."""

    base: float = 1.0
    maximum: float = 60.0
    jitter: float = 0.1

    def delay(self, attempt: int) -> float:
        raw = min(self.maximum, self.base * (2 ** attempt))
        if self.jitter:
            raw += random.uniform(0, raw * self.jitter)
        return min(raw, self.maximum)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    backoff: Backoff,
    retry_on: tuple[type[BaseException], ...],
    attempts: int | None = None,
    description: str = "call",
) -> T:
    """Await ``fn()`` until it succeeds, sleeping between failures.

    Only exceptions in *retry_on* are retried. With ``attempts=None`` the call
    is retried until it succeeds or the surrounding task is cancelled.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except retry_on as exc:
            attempt += 1
            if attempts is not None and attempt >= attempts:
                logger.warning(f"{description} failed after {attempt} attempts: {exc}")
                raise
            delay = backoff.delay(attempt - 1)
            logger.warning(f"{description} failed ({exc}); retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
