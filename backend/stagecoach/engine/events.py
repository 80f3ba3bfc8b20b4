"""Per-execution broadcast channels for live output."""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator

from .models import ExecutionEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One observer's queue of events for a single execution."""

    def __init__(self, bus: "ExecutionEventBus", execution_id: str):
        self.bus = bus
        self.execution_id = execution_id
        self.queue: asyncio.Queue[ExecutionEvent] = asyncio.Queue()
        self.closed = False

    def deliver(self, event: ExecutionEvent) -> None:
        if not self.closed:
            self.queue.put_nowait(event)

    def close(self) -> None:
        self.bus.unsubscribe(self)

    async def events(
        self, keepalive_seconds: float | None = None
    ) -> AsyncIterator[ExecutionEvent]:
        """Yield events in publish order until the terminal one.

        A ``ping`` event is yielded whenever nothing arrived for
        ``keepalive_seconds``.
        """
        try:
            while True:
                try:
                    event = await asyncio.wait_for(
                        self.queue.get(), timeout=keepalive_seconds
                    )
                except asyncio.TimeoutError:
                    yield ExecutionEvent(type="ping", execution_id=self.execution_id)
                    continue

                yield event
                if event.is_terminal:
                    return
        finally:
            self.close()

    def __aiter__(self) -> AsyncIterator[ExecutionEvent]:
        return self.events()


class ExecutionEventBus:
    """Registry of subscribers keyed by execution id."""

    def __init__(self, finished_kept: int = 100):
        # execution_id -> subscriptions, in subscribe order
        self.subscriptions: dict[str, list[Subscription]] = {}
        # Terminal events of recent executions, replayed to late subscribers
        self.finished: OrderedDict[str, ExecutionEvent] = OrderedDict()
        self.finished_kept = finished_kept

    def subscribe(self, execution_id: str) -> Subscription:
        subscription = Subscription(self, execution_id)

        terminal = self.finished.get(execution_id)
        if terminal is not None:
            subscription.deliver(terminal)
            return subscription

        self.subscriptions.setdefault(execution_id, []).append(subscription)
        logger.debug(
            f"Subscribed to execution {execution_id} "
            f"({len(self.subscriptions[execution_id])} subscribers)"
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        subscribers = self.subscriptions.get(subscription.execution_id)
        if not subscribers:
            return

        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self.subscriptions.pop(subscription.execution_id, None)
        logger.debug(f"Unsubscribed from execution {subscription.execution_id}")

    def publish(self, event: ExecutionEvent) -> None:
        """Deliver an event to every current subscriber of its execution."""
        for subscription in list(self.subscriptions.get(event.execution_id, [])):
            subscription.deliver(event)

        if event.is_terminal:
            self._release(event)

    def finish(self, event: ExecutionEvent) -> None:
        """Publish a terminal event and drop every subscriber of its execution."""
        if not event.is_terminal:
            raise ValueError(f"'{event.type}' cannot end an execution")
        self.publish(event)

    def _release(self, event: ExecutionEvent) -> None:
        subscribers = self.subscriptions.pop(event.execution_id, [])
        for subscription in subscribers:
            subscription.closed = True

        self.finished[event.execution_id] = event
        while len(self.finished) > self.finished_kept:
            self.finished.popitem(last=False)

        logger.debug(
            f"Execution {event.execution_id} finished with '{event.type}', "
            f"released {len(subscribers)} subscribers"
        )

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self.subscriptions

    def get_subscriber_count(self, execution_id: str) -> int:
        return len(self.subscriptions.get(execution_id, []))
