"""In-process publish/subscribe for analysis progress.

One topic per analysis id. Every subscriber gets its own queue, so each
observes events in emission order. Publishing to a topic with no
subscribers delivers nothing, but the topic's status snapshot is still
updated so late joiners are not left without state.

All methods must be called from the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from .events import ProgressEvent

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


# (delay_seconds, callback) -> handle
Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


def _loop_scheduler(delay: float, callback: Callable[[], None]) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class Subscription:
    """An ordered stream of events for one subscriber.

    Iterate with ``async for``; iteration ends when the topic is torn down
    or the subscription is closed.
    """

    def __init__(self, analysis_id: str, snapshot: Optional[dict[str, Any]]):
        self.analysis_id = analysis_id
        self.snapshot = snapshot
        self._queue: asyncio.Queue[Optional[ProgressEvent]] = asyncio.Queue()
        self.closed = False

    def deliver(self, event: ProgressEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    async def get(self) -> Optional[ProgressEvent]:
        """Next event, or None once the stream has ended."""
        return await self._queue.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


@dataclass
class Topic:
    analysis_id: str
    subscribers: list[Subscription] = field(default_factory=list)
    snapshot: Optional[dict[str, Any]] = None
    opened: bool = False
    teardown: Optional[TimerHandle] = None


def snapshot_from_event(event: ProgressEvent) -> dict[str, Any]:
    payload = event.payload
    return {
        "analysis_id": event.analysis_id,
        "status": payload.get("status", "analyzing"),
        "stage": payload.get("stage"),
        "percent": payload.get("percent"),
        "message": payload.get("error") or payload.get("message"),
        "updated_at": event.timestamp,
    }


class ProgressBroadcaster:
    """Fans progress events out to per-analysis subscribers."""

    def __init__(self, grace_period: float = 5.0, scheduler: Scheduler | None = None):
        self.grace_period = grace_period
        self._schedule = scheduler or _loop_scheduler
        self._topics: dict[str, Topic] = {}

    def open(self, analysis_id: str) -> None:
        """Open the topic for a run that is starting."""
        topic = self._topics.setdefault(analysis_id, Topic(analysis_id))
        topic.opened = True
        if topic.teardown is not None:
            topic.teardown.cancel()
            topic.teardown = None
        topic.snapshot = {
            "analysis_id": analysis_id,
            "status": "analyzing",
            "stage": None,
            "percent": 0,
            "message": None,
            "updated_at": None,
        }

    def subscribe(self, analysis_id: str) -> Subscription:
        """Join a topic. The returned subscription carries the current snapshot."""
        topic = self._topics.setdefault(analysis_id, Topic(analysis_id))
        sub = Subscription(analysis_id, dict(topic.snapshot) if topic.snapshot else None)
        topic.subscribers.append(sub)
        logger.debug(f"Subscriber joined {analysis_id} ({len(topic.subscribers)} total)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()
        topic = self._topics.get(sub.analysis_id)
        if topic is None:
            return
        if sub in topic.subscribers:
            topic.subscribers.remove(sub)
        # Drop topics that only existed because someone subscribed early
        if not topic.subscribers and not topic.opened:
            del self._topics[sub.analysis_id]

    def publish(self, event: ProgressEvent) -> int:
        """Deliver ``event`` to every current subscriber. Returns the delivery count."""
        topic = self._topics.setdefault(event.analysis_id, Topic(event.analysis_id, opened=True))
        topic.snapshot = snapshot_from_event(event)

        subscribers = list(topic.subscribers)
        for sub in subscribers:
            sub.deliver(event)

        if event.is_terminal and topic.teardown is None:
            topic.teardown = self._schedule(
                self.grace_period, lambda: self._teardown(event.analysis_id)
            )
        return len(subscribers)

    def snapshot(self, analysis_id: str) -> Optional[dict[str, Any]]:
        topic = self._topics.get(analysis_id)
        if topic is None or topic.snapshot is None:
            return None
        return dict(topic.snapshot)

    def subscriber_count(self, analysis_id: str) -> int:
        topic = self._topics.get(analysis_id)
        return len(topic.subscribers) if topic else 0

    def has_topic(self, analysis_id: str) -> bool:
        return analysis_id in self._topics

    def _teardown(self, analysis_id: str) -> None:
        topic = self._topics.pop(analysis_id, None)
        if topic is None:
            return
        for sub in topic.subscribers:
            sub.close()
        logger.debug(f"Closed progress topic {analysis_id}")

    def close(self) -> None:
        """Tear down every topic immediately."""
        for analysis_id in list(self._topics):
            topic = self._topics[analysis_id]
            if topic.teardown is not None:
                topic.teardown.cancel()
            self._teardown(analysis_id)
