"""In-process event bus carrying plan continuations."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine
from uuid import uuid4

from conductor.utils.logging import get_logger

log = get_logger(__name__)


class EventType(str, Enum):
    PLAN_CONTINUE = "plan.continue"


@dataclass
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def coalesce_key(self) -> str | None:
        """Events sharing a key collapse into one while still queued."""
        return None


@dataclass
class PlanContinue(Event):
    type: EventType = field(default=EventType.PLAN_CONTINUE, init=False)
    plan_id: str = ""

    @property
    def coalesce_key(self) -> str | None:
        return self.plan_id or None


Handler = Callable[[Event], Coroutine[Any, Any, None]]


@dataclass
class _Subscription:
    handler: Handler
    queue: asyncio.Queue[Event]
    queued_keys: set[str] = field(default_factory=set)

    @property
    def name(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))


class EventBus:
    """Each subscriber owns a bounded queue drained by one consumer task, so a
    handler sees events strictly one at a time.

    A continuation for a plan that already has one waiting in the queue is
    dropped: advancing a plan is idempotent, so the queued one is enough.
    """

    def __init__(self, max_queue_size: int = 256) -> None:
        self._subscriptions: dict[EventType, list[_Subscription]] = {}
        self._max_queue_size = max_queue_size
        self._tasks: list[asyncio.Task[None]] = []

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        sub = _Subscription(handler, asyncio.Queue(maxsize=self._max_queue_size))
        self._subscriptions.setdefault(event_type, []).append(sub)

    async def publish(self, event: Event) -> bool:
        """Queue the event for every subscriber. False if any queue was full."""
        delivered = True
        key = event.coalesce_key
        for sub in self._subscriptions.get(event.type, []):
            if key is not None and key in sub.queued_keys:
                log.debug("event_coalesced", event_type=event.type.value, key=key)
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                delivered = False
                log.warning("event_queue_full", event_type=event.type.value, handler=sub.name)
                continue
            if key is not None:
                sub.queued_keys.add(key)
        return delivered

    async def start(self) -> None:
        for event_type, subs in self._subscriptions.items():
            for sub in subs:
                self._tasks.append(asyncio.create_task(
                    self._consume(sub), name=f"bus-{event_type.value}-{sub.name}",
                ))

    async def _consume(self, sub: _Subscription) -> None:
        while True:
            event = await sub.queue.get()
            # Released before handling so the handler can queue a follow-up.
            if event.coalesce_key is not None:
                sub.queued_keys.discard(event.coalesce_key)
            try:
                await sub.handler(event)
            except Exception:
                log.exception("handler_error", event_type=event.type.value, event_id=event.id)
            finally:
                sub.queue.task_done()

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        for subs in self._subscriptions.values():
            for sub in subs:
                await sub.queue.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
