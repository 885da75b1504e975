"""Continuation triggers: hand a plan off to the next invocation.

Delivery is at-least-once at best and may be lost entirely; the receiving
side must tolerate duplicates and the orphan sweeper picks up plans whose
continuation never arrived.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import httpx

from conductor.config import ContinuationConfig
from conductor.core.bus import EventBus, PlanContinue
from conductor.utils.logging import get_logger

log = get_logger(__name__)


class ContinuationError(Exception):
    """The continuation could not be handed to its transport."""


class ContinuationTrigger(ABC):
    @abstractmethod
    async def enqueue(self, plan_id: str) -> None:
        """Request one more ``orchestrate_plan`` call for the plan."""
        ...

    async def close(self) -> None:
        """Release resources. Override if needed."""


class BusContinuation(ContinuationTrigger):
    """In-process continuation via the event bus."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    async def enqueue(self, plan_id: str) -> None:
        delivered = await self._bus.publish(PlanContinue(plan_id=plan_id))
        if not delivered:
            raise ContinuationError(f"Continuation queue full for plan {plan_id}")


class HttpContinuation(ContinuationTrigger):
    """Authenticated fire-and-forget POST to ``/plans/{id}/continue``."""

    def __init__(
        self,
        config: ContinuationConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        base_url = config.base_url.rstrip("/")
        if base_url and not base_url.startswith("http"):
            base_url = f"https://{base_url}"
        self._base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url or "http://localhost",
            timeout=config.timeout,
            transport=transport,
        )
        self._pending: set[asyncio.Task[None]] = set()

    async def enqueue(self, plan_id: str) -> None:
        if not self._base_url:
            log.warning("continuation_base_url_missing", plan_id=plan_id)
            return
        task = asyncio.create_task(self._post(plan_id), name=f"continue-{plan_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, plan_id: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self._config.secret:
            headers["Authorization"] = f"Bearer {self._config.secret}"
        try:
            resp = await self._client.post(f"/plans/{plan_id}/continue", headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError:
            log.exception("continuation_post_failed", plan_id=plan_id)

    async def drain(self) -> None:
        """Wait for in-flight posts. Used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self._client.aclose()
