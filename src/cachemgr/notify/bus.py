"""Async pub/sub notifier.

Routes operation progress and completion events to subscribers (a WebSocket
hub, the CLI's progress display, tests). Every subscriber has its own
bounded inbox and its own delivery task::

    publish ─┬─ inbox A (drop oldest) ── task A ── callback A
             └─ inbox B (drop oldest) ── task B ── callback B

A slow callback only backs up its own inbox, which then sheds the oldest
events. ``publish`` never waits on a callback and never raises into an
operation's own task.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Callable
from typing import Any

from cachemgr.core.logging import get_logger
from cachemgr.core.task_utils import log_task_exception
from cachemgr.notify.events import NotifierEvent

_logger = get_logger("notify.bus")

EventFilter = Callable[[NotifierEvent], bool] | None
EventCallback = Callable[[NotifierEvent], Any]

_MAX_CONSECUTIVE_FAILURES = 10


class Notifier:
    """Pub/sub bus with a bounded inbox and delivery task per subscriber.

    Usage::

        notifier = Notifier(max_queue_size=1000)
        await notifier.start()

        sub_id = notifier.subscribe(
            callback=handler,
            event_filter=lambda e: e.event == "operation.complete",
        )
        await notifier.publish(event)

        notifier.unsubscribe(sub_id)
        await notifier.shutdown()
    """

    def __init__(self, *, max_queue_size: int = 1000) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, _Subscriber] = {}
        self._running = False

    async def start(self) -> None:
        """Start delivery for every current and future subscriber."""
        if self._running:
            return
        self._running = True
        for sub_id, sub in self._subscribers.items():
            self._start_delivery(sub_id, sub)

    async def publish(self, event: NotifierEvent) -> None:
        """Queue an event for every matching subscriber.

        Dropped if the notifier is stopped. Returns without waiting for any
        callback to run.
        """
        if not self._running:
            return
        for sub_id, sub in list(self._subscribers.items()):
            if sub.disabled:
                continue
            try:
                if sub.event_filter is not None and not sub.event_filter(event):
                    continue
            except Exception:
                _logger.warning(
                    "notifier.filter_error",
                    subscriber_id=sub_id,
                    event_type=event.event,
                    exc_info=True,
                )
                continue
            if len(sub.inbox) == self._max_queue_size:
                sub.dropped += 1
                _logger.debug(
                    "notifier.event_dropped",
                    subscriber_id=sub_id,
                    event_type=sub.inbox[0].event,
                    dropped_total=sub.dropped,
                )
            sub.inbox.append(event)
            sub.history.append(event)
            sub.idle.clear()
            sub.wakeup.set()

    async def join(self) -> None:
        """Wait until every subscriber has worked through its inbox."""
        if not self._running:
            return
        for sub in list(self._subscribers.values()):
            await sub.idle.wait()

    def subscribe(
        self,
        callback: EventCallback,
        *,
        event_filter: EventFilter = None,
    ) -> str:
        """Register a subscriber.

        Args:
            callback: Async or sync callable receiving each event.
            event_filter: Optional predicate; only matching events are delivered.

        Returns:
            Subscription ID for later unsubscribe.
        """
        sub_id = str(uuid.uuid4())
        sub = _Subscriber(callback, event_filter, self._max_queue_size)
        self._subscribers[sub_id] = sub
        if self._running:
            self._start_delivery(sub_id, sub)
        _logger.debug("notifier.subscribed", sub_id=sub_id)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        sub = self._subscribers.pop(sub_id, None)
        if sub is None:
            return False
        if sub.task is not None:
            sub.task.cancel()
        sub.idle.set()
        _logger.debug("notifier.unsubscribed", sub_id=sub_id)
        return True

    def recent_events(self, sub_id: str) -> list[NotifierEvent]:
        """Events recently routed to a subscriber (bounded, oldest dropped first)."""
        sub = self._subscribers.get(sub_id)
        return list(sub.history) if sub else []

    def dropped_count(self, sub_id: str) -> int:
        """Events a subscriber lost because its inbox was full."""
        sub = self._subscribers.get(sub_id)
        return sub.dropped if sub else 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def shutdown(self) -> None:
        """Stop the delivery tasks, then deliver whatever is still queued."""
        self._running = False
        for sub in self._subscribers.values():
            if sub.task is not None:
                sub.task.cancel()
        for sub in self._subscribers.values():
            if sub.task is not None:
                try:
                    await sub.task
                except asyncio.CancelledError:
                    pass
                sub.task = None

        for sub_id, sub in list(self._subscribers.items()):
            while sub.inbox and not sub.disabled:
                await self._deliver(sub_id, sub, sub.inbox.popleft())
            sub.inbox.clear()
            sub.idle.set()

        _logger.info("notifier.shutdown", remaining_subscribers=len(self._subscribers))

    def _start_delivery(self, sub_id: str, sub: _Subscriber) -> None:
        sub.task = asyncio.create_task(
            self._delivery_loop(sub_id, sub), name=f"notifier-{sub_id[:8]}"
        )
        sub.task.add_done_callback(
            lambda t: log_task_exception(t, _logger, "notifier.delivery_died"),
        )

    async def _delivery_loop(self, sub_id: str, sub: _Subscriber) -> None:
        while not sub.disabled:
            if not sub.inbox:
                sub.idle.set()
                sub.wakeup.clear()
                await sub.wakeup.wait()
                continue
            await self._deliver(sub_id, sub, sub.inbox.popleft())
        sub.inbox.clear()
        sub.idle.set()

    async def _deliver(self, sub_id: str, sub: _Subscriber, event: NotifierEvent) -> None:
        try:
            result = sub.callback(event)
            if asyncio.iscoroutine(result):
                await result
            sub.consecutive_failures = 0
        except Exception:
            sub.consecutive_failures += 1
            _logger.warning(
                "notifier.subscriber_error",
                subscriber_id=sub_id,
                event_type=event.event,
                consecutive_failures=sub.consecutive_failures,
                exc_info=True,
            )
            if sub.disabled:
                _logger.error(
                    "notifier.subscriber_disabled",
                    subscriber_id=sub_id,
                    reason=f"{_MAX_CONSECUTIVE_FAILURES} consecutive failures",
                )


class _Subscriber:
    """Internal subscriber state."""

    __slots__ = (
        "callback",
        "event_filter",
        "inbox",
        "history",
        "wakeup",
        "idle",
        "task",
        "dropped",
        "consecutive_failures",
    )

    def __init__(
        self,
        callback: EventCallback,
        event_filter: EventFilter,
        max_queue_size: int,
    ) -> None:
        self.callback = callback
        self.event_filter = event_filter
        self.inbox: deque[NotifierEvent] = deque(maxlen=max_queue_size)
        self.history: deque[NotifierEvent] = deque(maxlen=max_queue_size)
        self.wakeup = asyncio.Event()
        self.idle = asyncio.Event()
        self.idle.set()
        self.task: asyncio.Task[None] | None = None
        self.dropped: int = 0
        self.consecutive_failures: int = 0

    @property
    def disabled(self) -> bool:
        return self.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES


__all__ = ["Notifier"]
