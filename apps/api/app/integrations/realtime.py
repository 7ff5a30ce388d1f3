import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from app.observability import log_event, metrics_store

USER_CHANNEL_PREFIX = "user"
RIDER_CHANNEL_PREFIX = "rider"
SUBSCRIBER_QUEUE_SIZE = 256


def user_channel(user_id: str) -> str:
    return f"{USER_CHANNEL_PREFIX}:{user_id}"


def rider_channel(rider_id: str) -> str:
    return f"{RIDER_CHANNEL_PREFIX}:{rider_id}"


class RealtimeNotifier(Protocol):
    def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None: ...


class _Subscriber:
    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)

    def offer(self, message: dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            metrics_store.increment("realtime_dropped_total")


class ConnectionHub:
    """Channel fan-out for WebSocket subscribers.

    ``publish`` is called from request worker threads; each subscriber queue
    belongs to the event loop that accepted the socket, so delivery is handed
    over with ``call_soon_threadsafe`` and never waits on a slow client.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscribers: dict[str, set[_Subscriber]] = defaultdict(set)

    def subscribe(self, channel: str) -> _Subscriber:
        subscriber = _Subscriber(asyncio.get_running_loop())
        with self._lock:
            self._subscribers[channel].add(subscriber)
        return subscriber

    def unsubscribe(self, channel: str, subscriber: _Subscriber) -> None:
        with self._lock:
            subscribers = self._subscribers.get(channel)
            if not subscribers:
                return
            subscribers.discard(subscriber)
            if not subscribers:
                del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))

    def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        message = {
            "channel": channel,
            "event": event,
            "payload": payload,
            "published_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            targets = list(self._subscribers.get(channel, ()))

        for subscriber in targets:
            if subscriber.loop.is_closed():
                self.unsubscribe(channel, subscriber)
                continue
            subscriber.loop.call_soon_threadsafe(subscriber.offer, message)
        metrics_store.increment("realtime_published_total")


def publish_safely(
    notifier: RealtimeNotifier,
    channel: str,
    event: str,
    payload: dict[str, Any],
) -> None:
    """Best-effort publish: a notifier failure never fails the caller."""
    try:
        notifier.publish(channel, event, payload)
    except Exception:
        metrics_store.increment("realtime_publish_failed_total")
        log_event(
            f"realtime_publish_failed channel={channel} event={event}",
            level=logging.WARNING,
            exc_info=True,
        )


connection_hub = ConnectionHub()


def get_realtime_notifier() -> RealtimeNotifier:
    return connection_hub
