"""
Realtime Fanout — publish-on-write delivery of new notifications.

When the dispatcher persists a notification it is pushed to every live
subscription for that recipient. Clients never poll; a reconnecting
client does one catch-up fetch (db.store.fetch_since) and then listens.

Backends:
  - RedisFanout:    Redis pub/sub, channel "notifications:{recipient_id}"
  - InMemoryFanout: single-process hub with bounded per-subscriber queues
"""

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from functools import lru_cache
from typing import Any

import redis.asyncio as aioredis
import structlog

from core.config import get_settings

logger = structlog.get_logger()

NotificationCallback = Callable[[dict[str, Any]], Awaitable[None] | None]


def channel_for(recipient_id) -> str:
    return f"notifications:{recipient_id}"


def serialize_notification(notification) -> dict[str, Any]:
    """Wire envelope shared by push and catch-up delivery."""
    return {
        "type": "notification",
        "payload": {
            "notification_id": str(notification.notification_id),
            "recipient_id": str(notification.recipient_id),
            "dedup_key": notification.dedup_key,
            "rule_kind": notification.rule_kind,
            "subject_id": notification.subject_id,
            "category": notification.category,
            "severity": notification.severity,
            "title": notification.title,
            "message": notification.message,
            "payload": notification.payload or {},
            "is_read": bool(notification.is_read),
            "created_at": notification.created_at.isoformat() if notification.created_at else None,
        },
    }


async def _invoke(callback: NotificationCallback, message: dict[str, Any]) -> None:
    outcome = callback(message)
    if inspect.isawaitable(outcome):
        await outcome


class Subscription:
    def __init__(self, recipient_id: str, task: asyncio.Task, on_close: Callable[[], Awaitable[None]] | None = None):
        self.recipient_id = recipient_id
        self._task = task
        self._on_close = on_close

    @property
    def active(self) -> bool:
        return not self._task.done()

    async def close(self) -> None:
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        if self._on_close is not None:
            await self._on_close()
            self._on_close = None

    async def wait_closed(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class NotificationFanout(ABC):
    @abstractmethod
    async def publish(self, notification) -> int:
        """Push a persisted notification to its recipient's live subscriptions. Never raises."""
        ...

    @abstractmethod
    async def subscribe(self, recipient_id, on_notification: NotificationCallback) -> Subscription:
        ...

    async def close(self) -> None:
        return None


# ──────────────────────────────────────────────────────────────────────────
# Redis pub/sub
# ──────────────────────────────────────────────────────────────────────────


class RedisFanout(NotificationFanout):
    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._redis: aioredis.Redis | None = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self.redis_url)
        return self._redis

    async def publish(self, notification) -> int:
        channel = channel_for(notification.recipient_id)
        try:
            return await self._client().publish(channel, json.dumps(serialize_notification(notification)))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "fanout.publish_failed",
                channel=channel,
                notification_id=str(notification.notification_id),
                error=str(exc),
            )
            return 0

    async def subscribe(self, recipient_id, on_notification: NotificationCallback) -> Subscription:
        channel = channel_for(recipient_id)
        pubsub = self._client().pubsub()
        await pubsub.subscribe(channel)

        async def listen():
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode()
                try:
                    await _invoke(on_notification, json.loads(data))
                except Exception as exc:  # noqa: BLE001
                    logger.warning("fanout.deliver_failed", channel=channel, error=str(exc))
                    break

        async def cleanup():
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

        return Subscription(str(recipient_id), asyncio.create_task(listen()), on_close=cleanup)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# ──────────────────────────────────────────────────────────────────────────
# In-process hub
# ──────────────────────────────────────────────────────────────────────────


class InMemoryFanout(NotificationFanout):
    """
    Each subscriber owns a bounded queue drained by its own task, so a slow
    callback only delays itself. A full queue drops that subscriber's copy.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._queues: dict[str, set[asyncio.Queue]] = {}

    def subscriber_count(self, recipient_id) -> int:
        return len(self._queues.get(str(recipient_id), ()))

    async def publish(self, notification) -> int:
        key = str(notification.recipient_id)
        message = serialize_notification(notification)
        delivered = 0
        for queue in list(self._queues.get(key, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("fanout.subscriber_lagging", recipient_id=key, notification_id=message["payload"]["notification_id"])
        return delivered

    async def subscribe(self, recipient_id, on_notification: NotificationCallback) -> Subscription:
        key = str(recipient_id)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._queues.setdefault(key, set()).add(queue)

        async def cleanup():
            subscribers = self._queues.get(key)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    self._queues.pop(key, None)

        async def pump():
            while True:
                message = await queue.get()
                try:
                    await _invoke(on_notification, message)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("fanout.deliver_failed", recipient_id=key, error=str(exc))
                    await cleanup()
                    break

        return Subscription(key, asyncio.create_task(pump()), on_close=cleanup)


def build_fanout(settings) -> NotificationFanout:
    if settings.realtime_backend == "memory":
        return InMemoryFanout(queue_size=settings.realtime_queue_size)
    return RedisFanout(settings.redis_url)


@lru_cache
def get_fanout() -> NotificationFanout:
    """Process-wide fanout, chosen by settings.realtime_backend."""
    return build_fanout(get_settings())
