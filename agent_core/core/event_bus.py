"""
Event Bus - Notification channels of the execution core

This module implements a pub-sub event bus that the scheduler and the
reasoning loops publish to, and that presentation layers consume.

Features:
- Sync and async subscribers with priority ordering and filtering
- Async event streams (asyncio.Queue backed) per channel, for consumers that
  prefer ``async for event in stream``
- Event history and replay
- Dead letter queue for events whose handlers keep failing

The bus is an ordinary object owned by the composition root and handed to the
components that publish on it; there is no process-wide instance.
"""

import asyncio
import inspect
import itertools
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from agent_core.models.messages import SystemEvent, create_system_event
from agent_core.models.task import now_ms
from agent_core.utils.logger import get_logger

logger = get_logger(__name__)

WILDCARD = "*"

_sequence = itertools.count()


@dataclass
class EventSubscription:
    """A handler registered for one channel (or WILDCARD)."""
    subscription_id: str
    event_type: str
    handler: Callable[[SystemEvent], Any]
    subscriber_name: str = "unknown"
    filter_func: Optional[Callable[[SystemEvent], bool]] = None
    priority: int = 5  # 1=highest, 10=lowest
    is_async: bool = False
    max_retries: int = 1
    sequence: int = field(default_factory=lambda: next(_sequence))

    def wants(self, event: SystemEvent) -> bool:
        if self.event_type not in (WILDCARD, event['event_type']):
            return False
        return self.filter_func is None or bool(self.filter_func(event))


@dataclass
class EventRecord:
    """One published event and which subscribers handled it."""
    event: SystemEvent
    published_at: int
    delivered_to: List[str] = field(default_factory=list)
    failed_for: List[str] = field(default_factory=list)


@dataclass
class DeadLetter:
    """An event a subscriber could not handle after its retries."""
    event: SystemEvent
    subscriber_name: str
    error: str


class EventStream:
    """
    Async iterator over the events of one or more channels.

    Usage:
        stream = bus.stream("task_updated", "log")
        async for event in stream:
            render(event["payload"])
    """

    def __init__(self, bus: "EventBus", channels: Set[str], maxsize: int = 0):
        self._bus = bus
        self.channels = channels
        self.queue: "asyncio.Queue[Optional[SystemEvent]]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def matches(self, event_type: str) -> bool:
        return WILDCARD in self.channels or event_type in self.channels

    def push(self, event: SystemEvent) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"[EVENTS] Stream for {sorted(self.channels)} is full, dropped {event['event_type']}"
            )

    async def get(self, timeout: Optional[float] = None) -> Optional[SystemEvent]:
        """Next event, or None once the stream is closed."""
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def get_nowait(self) -> Optional[SystemEvent]:
        return self.queue.get_nowait()

    def drain(self) -> List[SystemEvent]:
        """Every event currently buffered, without waiting."""
        events = []
        while not self.queue.empty():
            event = self.queue.get_nowait()
            if event is not None:
                events.append(event)
        return events

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus.detach_stream(self)
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> SystemEvent:
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """
    Event bus for the task_updated, log, artifact_created, agent_spawned,
    run_finished and run_failed channels.

    Usage:
        bus = EventBus()

        def on_task(event: SystemEvent):
            print(event['payload']['task']['status'])

        bus.subscribe("task_updated", on_task, subscriber_name="ui")
        bus.emit("log", {"taskId": "t1", "status": "INFO", "message": "hi", "timestamp": 0})
    """

    def __init__(self, enable_history: bool = True, history_max_size: int = 1000):
        """
        Args:
            enable_history: Keep published events for inspection and replay
            history_max_size: Oldest records are discarded beyond this many
        """
        self._subscriptions: Dict[str, EventSubscription] = {}
        self.streams: List[EventStream] = []

        self.enable_history = enable_history
        self.event_history: Deque[EventRecord] = deque(maxlen=history_max_size)
        self.dead_letter_queue: List[DeadLetter] = []
        self.stats: Counter = Counter()
        self._pending: Set["asyncio.Task[Any]"] = set()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        event_type: str,
        handler: Callable[[SystemEvent], Any],
        subscriber_name: str = "unknown",
        filter_func: Optional[Callable[[SystemEvent], bool]] = None,
        priority: int = 5,
        is_async: Optional[bool] = None,
        max_retries: int = 1
    ) -> str:
        """
        Register a handler for a channel.

        Args:
            event_type: Channel name, or "*" for every channel
            handler: Function or coroutine function receiving the SystemEvent
            subscriber_name: Used in logs and dead letters
            filter_func: Return True to receive the event
            priority: 1 runs first, 10 runs last; ties run in subscription order
            is_async: Force async dispatch (detected from the handler when omitted)
            max_retries: Extra attempts for a failing handler before dead-lettering

        Returns:
            The subscription id, for unsubscribe()
        """
        subscription = EventSubscription(
            subscription_id=uuid.uuid4().hex,
            event_type=event_type,
            handler=handler,
            subscriber_name=subscriber_name,
            filter_func=filter_func,
            priority=priority,
            is_async=inspect.iscoroutinefunction(handler) if is_async is None else is_async,
            max_retries=max_retries,
        )
        self._subscriptions[subscription.subscription_id] = subscription
        logger.debug(f"[EVENTS] {subscriber_name} subscribed to {event_type}")
        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    def subscribers_for(self, event: SystemEvent) -> List[EventSubscription]:
        """Subscriptions that receive ``event``, in delivery order."""
        matching = [s for s in self._subscriptions.values() if s.wants(event)]
        return sorted(matching, key=lambda s: (s.priority, s.sequence))

    def stream(self, *channels: str, maxsize: int = 0) -> EventStream:
        """
        Open an async stream over the given channels (all channels when none given).

        Must be called from code running inside an event loop.
        """
        event_stream = EventStream(self, set(channels) or {WILDCARD}, maxsize=maxsize)
        self.streams.append(event_stream)
        return event_stream

    def detach_stream(self, event_stream: EventStream) -> None:
        if event_stream in self.streams:
            self.streams.remove(event_stream)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def emit(
        self,
        event_type: str,
        payload: Dict[str, Any],
        source_agent: str = "scheduler",
        source_task_id: Optional[str] = None,
        severity: str = "info"
    ) -> SystemEvent:
        """Build a SystemEvent and publish it."""
        event = create_system_event(
            event_type=event_type,
            payload=payload,
            source_agent=source_agent,
            source_task_id=source_task_id,
            severity=severity,  # type: ignore[arg-type]
        )
        self.publish(event)
        return event

    def publish(self, event: SystemEvent) -> None:
        """
        Deliver an event to open streams and matching subscribers.

        A failing sync handler is retried up to its max_retries and then
        dead-lettered; the publisher never sees the exception. Async handlers
        are scheduled on the running loop and awaited by drain().
        """
        self.stats["events_published"] += 1
        if not event.get('propagate', True):
            return

        for event_stream in self.streams:
            if event_stream.matches(event['event_type']):
                event_stream.push(event)

        record = EventRecord(event=event, published_at=now_ms())
        for subscription in self.subscribers_for(event):
            if subscription.is_async:
                self._schedule_async(event, subscription)
                record.delivered_to.append(subscription.subscriber_name)
            elif self._deliver(event, subscription):
                record.delivered_to.append(subscription.subscriber_name)
            else:
                record.failed_for.append(subscription.subscriber_name)

        if record.failed_for:
            self.stats["events_failed"] += 1
        elif record.delivered_to:
            self.stats["events_delivered"] += 1
        if self.enable_history:
            self.event_history.append(record)

    def _deliver(self, event: SystemEvent, subscription: EventSubscription) -> bool:
        error: Optional[Exception] = None
        for attempt in range(1, subscription.max_retries + 2):
            try:
                subscription.handler(event)
            except Exception as e:
                error = e
                self._record_handler_failure(event, subscription, attempt, e)
                continue
            self.stats["handlers_executed"] += 1
            return True
        self._dead_letter(event, subscription, str(error))
        return False

    async def _deliver_async(self, event: SystemEvent, subscription: EventSubscription) -> None:
        error: Optional[Exception] = None
        for attempt in range(1, subscription.max_retries + 2):
            try:
                await subscription.handler(event)
            except Exception as e:
                error = e
                self._record_handler_failure(event, subscription, attempt, e)
                continue
            self.stats["handlers_executed"] += 1
            return
        self._dead_letter(event, subscription, str(error))

    def _schedule_async(self, event: SystemEvent, subscription: EventSubscription) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                f"[EVENTS] No running event loop for async handler {subscription.subscriber_name}"
            )
            self._dead_letter(event, subscription, "no running event loop")
            return
        task = loop.create_task(self._deliver_async(event, subscription))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _record_handler_failure(
        self, event: SystemEvent, subscription: EventSubscription, attempt: int, error: Exception
    ) -> None:
        self.stats["handlers_failed"] += 1
        logger.error(
            f"[EVENTS] {subscription.subscriber_name} failed on {event['event_type']} "
            f"(attempt {attempt}/{subscription.max_retries + 1}): {error}"
        )

    def _dead_letter(self, event: SystemEvent, subscription: EventSubscription, error: str) -> None:
        self.dead_letter_queue.append(DeadLetter(event, subscription.subscriber_name, error))
        logger.warning(f"[EVENTS] Dead-lettered {event['event_type']} for {subscription.subscriber_name}")

    async def drain(self) -> None:
        """Wait for every async handler scheduled so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_event_history(self, event_type: Optional[str] = None, limit: int = 100) -> List[EventRecord]:
        """Recorded events, most recent first."""
        records = [
            record for record in reversed(self.event_history)
            if event_type is None or record.event['event_type'] == event_type
        ]
        return records[:limit]

    def events(self, event_types: Iterable[str]) -> List[SystemEvent]:
        """Recorded events of the given types, oldest first."""
        wanted = set(event_types)
        return [record.event for record in self.event_history if record.event['event_type'] in wanted]

    def replay_event(self, event_id: str) -> bool:
        """Re-publish a recorded event. Returns False when it is not in history."""
        for record in list(self.event_history):
            if record.event['event_id'] == event_id:
                logger.info(f"[EVENTS] Replaying {record.event['event_type']} {event_id}")
                self.publish(record.event)
                return True
        return False

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "events_published": self.stats["events_published"],
            "events_delivered": self.stats["events_delivered"],
            "events_failed": self.stats["events_failed"],
            "handlers_executed": self.stats["handlers_executed"],
            "handlers_failed": self.stats["handlers_failed"],
            "subscriptions": len(self._subscriptions),
            "open_streams": len(self.streams),
            "dead_letter_queue_size": len(self.dead_letter_queue),
            "history_size": len(self.event_history),
        }
