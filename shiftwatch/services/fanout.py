"""Publish/subscribe fan-out for alert and session events.

Topics are plain strings: ``alerts:site:{id}`` per site, ``alerts:all`` for
the global dashboard and ``guard:{id}`` per guard. Delivery is
fire-and-forget; a topic nobody listens to drops the event. New alert
subscribers get a backfill snapshot before any live event.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Protocol

import anyio
import redis.asyncio as redis

from shiftwatch.schemas import AlertEvent, SessionRevokedEvent
from shiftwatch.settings import get_redis_url, get_settings, uses_redis_notifications

logger = logging.getLogger("shiftwatch.fanout")

ALL_ALERTS_TOPIC = "alerts:all"
KEEPALIVE_FRAME = ": ping\n\n"

BackfillLoader = Callable[[], Awaitable[list[dict[str, Any]]]]
DisconnectCheck = Callable[[], Awaitable[bool]]


def site_topic(site_id: int) -> str:
    return f"alerts:site:{site_id}"


def guard_topic(guard_id: int) -> str:
    return f"guard:{guard_id}"


class BrokerSubscription(Protocol):
    async def get(self, timeout: float) -> str | None: ...

    async def close(self) -> None: ...


class Broker(Protocol):
    async def publish(self, topic: str, message: str) -> int: ...

    async def subscribe(self, topic: str) -> BrokerSubscription: ...

    async def close(self) -> None: ...


class _QueueSubscription:
    def __init__(self, broker: InMemoryBroker, topic: str, maxsize: int) -> None:
        self.topic = topic
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._broker = broker
        self._closed = False

    async def get(self, timeout: float) -> str | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broker._discard(self)


class InMemoryBroker:
    """Single-process broker backed by one bounded asyncio queue per subscriber."""

    def __init__(self, *, queue_size: int = 256) -> None:
        self._queue_size = max(1, int(queue_size))
        self._subscribers: dict[str, set[_QueueSubscription]] = {}

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, message: str) -> int:
        delivered = 0
        for subscription in list(self._subscribers.get(topic, ())):
            try:
                subscription.queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(
                    "notification_subscriber_overflow",
                    extra={"topic": topic, "queue_size": self._queue_size},
                )
                continue
            delivered += 1
        return delivered

    async def subscribe(self, topic: str) -> _QueueSubscription:
        subscription = _QueueSubscription(self, topic, self._queue_size)
        self._subscribers.setdefault(topic, set()).add(subscription)
        return subscription

    def _discard(self, subscription: _QueueSubscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.topic, None)

    async def close(self) -> None:
        self._subscribers.clear()


class _RedisSubscription:
    def __init__(self, pubsub: Any, topic: str) -> None:
        self.topic = topic
        self._pubsub = pubsub
        self._closed = False

    async def get(self, timeout: float) -> str | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=remaining)
            if message is None:
                continue
            if message.get("type") != "message":
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                return data.decode("utf-8")
            return str(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with anyio.CancelScope(shield=True):
            try:
                await self._pubsub.unsubscribe(self.topic)
            finally:
                await self._pubsub.aclose()


class RedisBroker:
    """Cross-process broker on Redis pub/sub."""

    def __init__(self, url: str, *, client: redis.Redis | None = None) -> None:
        self._client = client or redis.Redis.from_url(url, decode_responses=True)

    async def publish(self, topic: str, message: str) -> int:
        return int(await self._client.publish(topic, message))

    async def subscribe(self, topic: str) -> _RedisSubscription:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(topic)
        return _RedisSubscription(pubsub, topic)

    async def close(self) -> None:
        await self._client.aclose()


class Subscription:
    """An open topic subscription: the backfill snapshot plus the live feed."""

    def __init__(self, topic: str, handle: BrokerSubscription, backfill: list[dict[str, Any]]) -> None:
        self.topic = topic
        self.backfill = backfill
        self._handle = handle

    async def next_event(self, timeout: float) -> dict[str, Any] | None:
        """Next live event, or None when ``timeout`` passes without one."""
        raw = await self._handle.get(timeout)
        if raw is None:
            return None
        try:
            event = json.loads(raw)
        except ValueError:
            logger.warning("notification_event_undecodable", extra={"topic": self.topic})
            return None
        return event if isinstance(event, dict) else None


class NotificationFanout:
    def __init__(self, broker: Broker, *, keepalive_seconds: float = 30) -> None:
        self.broker = broker
        self.keepalive_seconds = keepalive_seconds

    async def publish(self, topic: str, event: dict[str, Any]) -> bool:
        try:
            delivered = await self.broker.publish(topic, json.dumps(event, default=str))
        except Exception:
            # Notification is best effort; the state change is already committed.
            logger.exception("notification_publish_failed", extra={"topic": topic, "type": event.get("type")})
            return False
        logger.info(
            "notification_published",
            extra={"topic": topic, "type": event.get("type"), "delivered": delivered},
        )
        return True

    async def publish_alert(self, event_type: str, alert: dict[str, Any]) -> None:
        event = AlertEvent(type=event_type, alert=alert).model_dump(mode="json")  # type: ignore[arg-type]
        await self.publish(site_topic(int(alert["site_id"])), event)
        await self.publish(ALL_ALERTS_TOPIC, event)

    async def publish_session_revoked(self, guard_id: int, new_token_version: int) -> None:
        event = SessionRevokedEvent(newTokenVersion=new_token_version).model_dump(mode="json")
        await self.publish(guard_topic(guard_id), event)

    @asynccontextmanager
    async def subscribe(
        self,
        topic: str,
        load_backfill: BackfillLoader | None = None,
    ) -> AsyncIterator[Subscription]:
        # Register first so nothing published while the snapshot loads is lost.
        handle = await self.broker.subscribe(topic)
        logger.info("notification_subscribed", extra={"topic": topic})
        try:
            backfill = await load_backfill() if load_backfill is not None else []
            yield Subscription(topic, handle, backfill)
        finally:
            # A disconnect cancels the stream; the slot is released regardless.
            with anyio.CancelScope(shield=True):
                await handle.close()
            logger.info("notification_unsubscribed", extra={"topic": topic})

    async def close(self) -> None:
        await self.broker.close()


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def alert_event_stream(
    fanout: NotificationFanout,
    *,
    topic: str,
    load_backfill: BackfillLoader,
    disconnected: DisconnectCheck | None = None,
) -> AsyncIterator[str]:
    async with fanout.subscribe(topic, load_backfill) as subscription:
        yield format_sse("backfill", subscription.backfill)
        while True:
            if disconnected is not None and await disconnected():
                return
            event = await subscription.next_event(fanout.keepalive_seconds)
            if event is None:
                yield KEEPALIVE_FRAME
                continue
            yield format_sse("alert", event)


async def guard_session_stream(
    fanout: NotificationFanout,
    *,
    guard_id: int,
    token_version: int,
    disconnected: DisconnectCheck | None = None,
) -> AsyncIterator[str]:
    """Watch a guard's topic and end with ``force_logout`` once a newer session exists."""
    async with fanout.subscribe(guard_topic(guard_id)) as subscription:
        yield format_sse("ready", {"guard_id": guard_id, "token_version": token_version})
        while True:
            if disconnected is not None and await disconnected():
                return
            event = await subscription.next_event(fanout.keepalive_seconds)
            if event is None:
                yield KEEPALIVE_FRAME
                continue
            if event.get("type") != "session_revoked":
                continue
            new_version = event.get("newTokenVersion")
            if isinstance(new_version, int) and new_version > token_version:
                yield format_sse("force_logout", event)
                return


@lru_cache
def get_notification_fanout() -> NotificationFanout:
    settings = get_settings()
    broker: Broker
    if uses_redis_notifications():
        broker = RedisBroker(get_redis_url())
    else:
        broker = InMemoryBroker(queue_size=settings.subscriber_queue_size)
    return NotificationFanout(broker, keepalive_seconds=settings.stream_keepalive_seconds)
