"""Planning model abstract base class and shared retry policy."""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, TypeVar

from conductor.core.llm.types import Completion
from conductor.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int) -> float:
    """Exponential backoff with up to one second of jitter."""
    return (2 ** attempt) + random.uniform(0, 1)


async def with_retries(
    call: Callable[[], Awaitable[T]],
    is_transient: Callable[[Exception], bool],
    max_retries: int,
    provider: str,
) -> T:
    """Run ``call``, retrying transient failures. Anything else propagates."""
    attempt = 0
    while True:
        try:
            return await call()
        except Exception as e:
            if attempt >= max_retries or not is_transient(e):
                raise
            wait = backoff_delay(attempt)
            log.warning(
                "planning_model_retry",
                provider=provider,
                attempt=attempt,
                wait=round(wait, 2),
                error=type(e).__name__,
            )
            await asyncio.sleep(wait)
            attempt += 1


class PlanningModel(ABC):
    """Single-shot text completion used to decompose goals."""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion: ...

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
