"""
Run Event Bus - ordered delivery of run events to one subscriber per run.

Each run has at most one active subscriber. ``publish`` awaits the handler
before returning, so a producer that awaits each publish in turn delivers
events in exactly the order it produced them.

Two ways to consume:
- callback: ``bus.subscribe(run_id, handler)``
- async iterator: ``async for event in RunEventChannel(bus, run_id)``
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from nodestudio.errors import SubscriptionError
from nodestudio.runtime.run_events import TERMINAL_EVENT_TYPE, RunEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[RunEvent], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    run_id: str
    handler: EventHandler


class RunEventBus:
    """
    Example:
        bus = RunEventBus()

        async def on_event(event):
            print(event.type)

        sub_id = bus.subscribe("run_123", on_event)
        ...
        bus.unsubscribe(sub_id)
    """

    def __init__(self, max_history: int = 1000):
        self._subscriptions: dict[str, Subscription] = {}
        self._by_run: dict[str, str] = {}
        self._event_history: list[RunEvent] = []
        self._max_history = max_history
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(self, run_id: str, handler: EventHandler) -> str:
        """Register the single subscriber for ``run_id``. Returns a subscription id."""
        if run_id in self._by_run:
            raise SubscriptionError(f"Run {run_id} already has an active subscriber")
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(id=sub_id, run_id=run_id, handler=handler)
        self._by_run[run_id] = sub_id
        logger.debug(f"Subscription {sub_id} registered for run {run_id}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        self._by_run.pop(subscription.run_id, None)
        logger.debug(f"Subscription {subscription_id} removed")
        return True

    def has_subscriber(self, run_id: str) -> bool:
        return run_id in self._by_run

    async def publish(self, event: RunEvent) -> None:
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        sub_id = self._by_run.get(event.run_id)
        if sub_id is None:
            return
        subscription = self._subscriptions[sub_id]
        try:
            await subscription.handler(event)
        except Exception as e:
            logger.error(f"Handler error for {event.type} on run {event.run_id}: {e}")

    def get_history(self, run_id: str | None = None, limit: int | None = None) -> list[RunEvent]:
        events = [e for e in self._event_history if run_id is None or e.run_id == run_id]
        if limit is not None:
            events = events[-limit:]
        return events

    def clear_history(self) -> None:
        self._event_history = []


class RunEventChannel:
    """
    Async-iterator view over one run's events.

    Subscribes on construction; iteration ends after ``run.completed`` and
    the subscription is released at that point (or on ``close()``).
    """

    def __init__(self, bus: RunEventBus, run_id: str):
        self._bus = bus
        self.run_id = run_id
        self._queue: asyncio.Queue[RunEvent | None] = asyncio.Queue()
        self._sub_id: str | None = bus.subscribe(run_id, self._queue.put)
        self._done = False

    def close(self) -> None:
        if self._sub_id is not None:
            self._bus.unsubscribe(self._sub_id)
            self._sub_id = None
            self._queue.put_nowait(None)

    def __aiter__(self) -> "RunEventChannel":
        return self

    async def __anext__(self) -> RunEvent:
        if self._done:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            self._done = True
            raise StopAsyncIteration
        if event.type == TERMINAL_EVENT_TYPE:
            self._done = True
            if self._sub_id is not None:
                self._bus.unsubscribe(self._sub_id)
                self._sub_id = None
        return event
