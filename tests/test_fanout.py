from __future__ import annotations

import asyncio
import json
import unittest
from unittest.mock import AsyncMock, MagicMock

import anyio

from shiftwatch.services.fanout import (
    ALL_ALERTS_TOPIC,
    KEEPALIVE_FRAME,
    InMemoryBroker,
    NotificationFanout,
    RedisBroker,
    alert_event_stream,
    format_sse,
    guard_session_stream,
    guard_topic,
    site_topic,
)


def _alert_payload(alert_id: int, site_id: int = 3) -> dict:
    return {"id": alert_id, "site_id": site_id, "reason": "missed_checkin", "resolved_at": None}


def _frame_data(frame: str):  # type: ignore[no-untyped-def]
    data_line = next(line for line in frame.splitlines() if line.startswith("data: "))
    return json.loads(data_line[len("data: "):])


class NotificationFanoutTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.broker = InMemoryBroker(queue_size=8)
        self.fanout = NotificationFanout(self.broker, keepalive_seconds=0.05)

    async def test_publish_without_subscribers_is_dropped(self) -> None:
        self.assertTrue(await self.fanout.publish(site_topic(1), {"type": "alert_created", "alert": {}}))
        self.assertEqual(self.broker.subscriber_count(site_topic(1)), 0)

    async def test_backfill_precedes_events_published_while_loading(self) -> None:
        async def load_backfill() -> list[dict]:
            # Published after registration but before the snapshot is handed out.
            await self.fanout.publish_alert("alert_created", _alert_payload(2))
            return [_alert_payload(1)]

        async with self.fanout.subscribe(site_topic(3), load_backfill) as subscription:
            self.assertEqual([item["id"] for item in subscription.backfill], [1])
            event = await subscription.next_event(1)

        self.assertEqual(event, {"type": "alert_created", "alert": _alert_payload(2)})

    async def test_alert_goes_to_site_and_global_topics(self) -> None:
        async with self.fanout.subscribe(site_topic(3)) as site_sub, self.fanout.subscribe(ALL_ALERTS_TOPIC) as all_sub:
            async with self.fanout.subscribe(site_topic(4)) as other_sub:
                await self.fanout.publish_alert("alert_updated", _alert_payload(9, site_id=3))
                self.assertEqual((await site_sub.next_event(1))["alert"]["id"], 9)  # type: ignore[index]
                self.assertEqual((await all_sub.next_event(1))["type"], "alert_updated")  # type: ignore[index]
                self.assertIsNone(await other_sub.next_event(0.01))

    async def test_leaving_subscription_releases_slot(self) -> None:
        async with self.fanout.subscribe(guard_topic(5)):
            self.assertEqual(self.broker.subscriber_count(guard_topic(5)), 1)
        self.assertEqual(self.broker.subscriber_count(guard_topic(5)), 0)

    async def test_failed_backfill_still_releases_slot(self) -> None:
        loader = AsyncMock(side_effect=RuntimeError("db down"))
        with self.assertRaises(RuntimeError):
            async with self.fanout.subscribe(site_topic(3), loader):
                pass
        self.assertEqual(self.broker.subscriber_count(site_topic(3)), 0)

    async def test_full_subscriber_queue_drops_event(self) -> None:
        broker = InMemoryBroker(queue_size=1)
        fanout = NotificationFanout(broker)
        async with fanout.subscribe(guard_topic(1)) as subscription:
            self.assertEqual(await broker.publish(guard_topic(1), json.dumps({"n": 1})), 1)
            with self.assertLogs("shiftwatch.fanout", level="WARNING"):
                self.assertEqual(await broker.publish(guard_topic(1), json.dumps({"n": 2})), 0)
            self.assertEqual(await subscription.next_event(1), {"n": 1})
            self.assertIsNone(await subscription.next_event(0.01))

    async def test_publish_failure_is_logged_and_swallowed(self) -> None:
        broken = MagicMock()
        broken.publish = AsyncMock(side_effect=ConnectionError("redis gone"))
        fanout = NotificationFanout(broken)
        with self.assertLogs("shiftwatch.fanout", level="ERROR"):
            self.assertFalse(await fanout.publish(site_topic(1), {"type": "alert_created"}))
        await fanout.publish_session_revoked(1, 4)

    async def test_alert_stream_sends_backfill_then_live_events_and_keepalive(self) -> None:
        stream = alert_event_stream(
            self.fanout,
            topic=site_topic(3),
            load_backfill=AsyncMock(return_value=[_alert_payload(1)]),
        )
        first = await stream.__anext__()
        self.assertTrue(first.startswith("event: backfill\n"))
        self.assertEqual(_frame_data(first), [_alert_payload(1)])

        self.assertEqual(await stream.__anext__(), KEEPALIVE_FRAME)

        await self.fanout.publish_alert("alert_created", _alert_payload(2))
        live = await stream.__anext__()
        self.assertTrue(live.startswith("event: alert\n"))
        self.assertEqual(_frame_data(live)["alert"]["id"], 2)

        await stream.aclose()
        self.assertEqual(self.broker.subscriber_count(site_topic(3)), 0)

    async def test_guard_stream_forces_logout_only_for_newer_version(self) -> None:
        stream = guard_session_stream(self.fanout, guard_id=5, token_version=3)
        ready = await stream.__anext__()
        self.assertEqual(ready, format_sse("ready", {"guard_id": 5, "token_version": 3}))

        await self.fanout.publish_session_revoked(5, 3)
        self.assertEqual(await stream.__anext__(), KEEPALIVE_FRAME)

        await self.fanout.publish_session_revoked(5, 4)
        frame = await stream.__anext__()
        self.assertTrue(frame.startswith("event: force_logout\n"))
        self.assertEqual(_frame_data(frame), {"type": "session_revoked", "newTokenVersion": 4})

        with self.assertRaises(StopAsyncIteration):
            await stream.__anext__()
        self.assertEqual(self.broker.subscriber_count(guard_topic(5)), 0)

    async def test_stream_stops_when_client_disconnects(self) -> None:
        stream = guard_session_stream(
            self.fanout,
            guard_id=6,
            token_version=1,
            disconnected=AsyncMock(return_value=True),
        )
        await stream.__anext__()
        with self.assertRaises(StopAsyncIteration):
            await stream.__anext__()
        self.assertEqual(self.broker.subscriber_count(guard_topic(6)), 0)


class RedisBrokerTests(unittest.IsolatedAsyncioTestCase):
    async def test_publish_and_subscription_lifecycle(self) -> None:
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = AsyncMock(
            side_effect=[None, {"type": "message", "channel": "guard:1", "data": '{"type": "session_revoked"}'}]
        )
        client = MagicMock()
        client.publish = AsyncMock(return_value=2)
        client.pubsub = MagicMock(return_value=pubsub)
        client.aclose = AsyncMock()
        broker = RedisBroker("redis://unused", client=client)

        self.assertEqual(await broker.publish("guard:1", "{}"), 2)
        subscription = await broker.subscribe("guard:1")
        pubsub.subscribe.assert_awaited_once_with("guard:1")
        self.assertEqual(await subscription.get(1), '{"type": "session_revoked"}')

        await subscription.close()
        await subscription.close()
        pubsub.unsubscribe.assert_awaited_once_with("guard:1")
        pubsub.aclose.assert_awaited_once()

        await broker.close()
        client.aclose.assert_awaited_once()


class _FakePubSub:
    def __init__(self, messages: list | None = None) -> None:
        self.messages = list(messages or [])
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []
        self.closed = False
        self.fail_unsubscribe = False

    async def subscribe(self, topic: str) -> None:
        self.subscribed.append(topic)

    async def get_message(self, *, ignore_subscribe_messages: bool, timeout: float):  # type: ignore[no-untyped-def]
        if self.messages:
            return self.messages.pop(0)
        await asyncio.sleep(min(timeout, 0.01))
        return None

    async def unsubscribe(self, topic: str) -> None:
        await asyncio.sleep(0)
        if self.fail_unsubscribe:
            raise ConnectionError("redis gone")
        self.unsubscribed.append(topic)

    async def aclose(self) -> None:
        await asyncio.sleep(0)
        self.closed = True


def _redis_broker(pubsub: _FakePubSub) -> RedisBroker:
    client = MagicMock()
    client.pubsub = MagicMock(return_value=pubsub)
    return RedisBroker("redis://unused", client=client)


class RedisSubscriptionTests(unittest.IsolatedAsyncioTestCase):
    async def test_get_skips_control_messages_and_decodes_bytes(self) -> None:
        pubsub = _FakePubSub(
            [
                None,
                {"type": "subscribe", "channel": "guard:1", "data": 1},
                {"type": "message", "channel": "guard:1", "data": b'{"n": 1}'},
            ]
        )
        subscription = await _redis_broker(pubsub).subscribe("guard:1")
        self.assertEqual(pubsub.subscribed, ["guard:1"])
        self.assertEqual(await subscription.get(1), '{"n": 1}')

    async def test_get_returns_none_once_timeout_passes(self) -> None:
        subscription = await _redis_broker(_FakePubSub()).subscribe("guard:1")
        self.assertIsNone(await subscription.get(0.05))

    async def test_close_releases_connection_even_if_unsubscribe_fails(self) -> None:
        pubsub = _FakePubSub()
        pubsub.fail_unsubscribe = True
        subscription = await _redis_broker(pubsub).subscribe("guard:1")
        with self.assertRaises(ConnectionError):
            await subscription.close()
        self.assertTrue(pubsub.closed)
        await subscription.close()

    async def test_cancelled_stream_still_unsubscribes_and_closes(self) -> None:
        pubsub = _FakePubSub()
        fanout = NotificationFanout(_redis_broker(pubsub))
        entered = anyio.Event()

        async def consume() -> None:
            async with fanout.subscribe(guard_topic(1)) as subscription:
                entered.set()
                await subscription.next_event(30)

        async with anyio.create_task_group() as task_group:
            task_group.start_soon(consume)
            await entered.wait()
            task_group.cancel_scope.cancel()

        self.assertEqual(pubsub.unsubscribed, [guard_topic(1)])
        self.assertTrue(pubsub.closed)


if __name__ == "__main__":
    unittest.main()
