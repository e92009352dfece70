"""
In-process publication of ``routing.decision`` events.

Subscribers are either callbacks (sync or async) or bounded queues that a
streaming bridge such as an SSE endpoint drains.
"""

import asyncio
import inspect
from typing import Awaitable, Callable, List, Union

from loguru import logger

from task_router.models import RoutingDecision, RoutingEvent


EventCallback = Callable[[RoutingEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Fan-out of routing events to in-process subscribers."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._callbacks: List[EventCallback] = []
        self._queues: List[asyncio.Queue] = []
        self.published = 0

    def subscribe(self, callback: EventCallback) -> None:
        self._callbacks.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def open_queue(self) -> asyncio.Queue:
        """Register a queue that receives every subsequent event."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._queues.append(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._queues)

    async def publish(self, decision: RoutingDecision) -> RoutingEvent:
        """
        Deliver an event for a new decision revision to every subscriber.

        A failing callback or a full queue is logged and skipped; publication
        never fails the routing call that produced the decision.
        """
        event = RoutingEvent(decision=decision)
        self.published += 1

        for callback in list(self._callbacks):
            try:
                if inspect.iscoroutinefunction(callback):
                    await callback(event)
                else:
                    callback(event)
            except Exception as e:
                logger.error("Event callback failed", decision_id=decision.id, error=str(e))

        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event subscriber queue full, dropping event", decision_id=decision.id)

        return event
