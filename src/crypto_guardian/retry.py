from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _retry_everything(exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff around an async operation.

    ``max_attempts`` counts the first call, so the default policy makes at
    most three calls and sleeps 2s then 4s between them. Exceptions rejected
    by ``retry_on`` propagate immediately; once the budget is spent the last
    exception propagates unchanged.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    multiplier: float = 2.0
    retry_on: Callable[[BaseException], bool] = _retry_everything
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def run(self, operation: Callable[[], Awaitable[T]], name: str = "operation") -> T:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        delay = self.base_delay
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not self.retry_on(exc) or attempt == self.max_attempts:
                    raise
                logger.warning(
                    "%s attempt %d/%d failed (%s). Retrying in %.1fs",
                    name,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                await self.sleep(delay)
                delay *= self.multiplier

        raise AssertionError("unreachable")
