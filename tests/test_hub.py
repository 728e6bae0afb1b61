import asyncio
import json
import threading
import time
import uuid

import pytest
from starlette.concurrency import run_in_threadpool

from hub import (
    ChannelClosed,
    NotificationHub,
    ai_advices,
    budget_updated,
    connected,
    event_adapter,
    stamp,
)
from main import health
from router import event_stream
from tests.conftest import receive


def _event(spent=100):
    return budget_updated(uuid.uuid4(), spent, 1000 - spent)


async def _never_disconnected():
    return False


class TestChannel:
    def test_receive_times_out_with_none(self):
        hub = NotificationHub(buffer_size=2)
        channel, _ = hub.subscribe(uuid.uuid4())
        assert receive(channel, 0.01) is None

    def test_closed_channel_drains_then_raises(self):
        hub = NotificationHub(buffer_size=2)
        user_id = uuid.uuid4()
        channel, unsubscribe = hub.subscribe(user_id)
        hub.publish(user_id, _event())
        unsubscribe()

        assert receive(channel, 0.01).type == "budget_updated"
        with pytest.raises(ChannelClosed):
            receive(channel, 0.01)

    def test_receive_wakes_on_publish_from_other_thread(self):
        hub = NotificationHub()
        user_id = uuid.uuid4()
        channel, _ = hub.subscribe(user_id)

        async def wait_for_event():
            timer = threading.Timer(0.05, hub.publish, args=(user_id, _event(7)))
            timer.start()
            started = time.monotonic()
            event = await channel.receive(timeout=2)
            timer.join()
            return event, time.monotonic() - started

        event, waited = asyncio.run(wait_for_event())

        assert event.data.spent_cents == 7
        assert waited < 1.5

    def test_close_wakes_waiting_receiver(self):
        hub = NotificationHub()
        user_id = uuid.uuid4()
        channel, unsubscribe = hub.subscribe(user_id)

        async def wait_until_closed():
            threading.Timer(0.05, unsubscribe).start()
            with pytest.raises(ChannelClosed):
                await channel.receive(timeout=2)

        asyncio.run(wait_until_closed())
        assert channel.closed


class TestNotificationHub:
    def test_fan_out_to_every_channel_of_user_only(self):
        hub = NotificationHub()
        user_a, user_b = uuid.uuid4(), uuid.uuid4()
        a1, _ = hub.subscribe(user_a)
        a2, _ = hub.subscribe(user_a)
        b1, _ = hub.subscribe(user_b)

        delivered = hub.publish(user_a, _event(250))

        assert delivered == 2
        assert receive(a1, 0.1).data.spent_cents == 250
        assert receive(a2, 0.1).data.spent_cents == 250
        assert receive(b1, 0.01) is None

    def test_full_channel_drops_without_blocking(self):
        hub = NotificationHub(buffer_size=10)
        user_id = uuid.uuid4()
        channel, _ = hub.subscribe(user_id)
        for spent in range(10):
            hub.publish(user_id, _event(spent))

        started = time.monotonic()
        hub.publish(user_id, _event(999))
        assert time.monotonic() - started < 0.5

        async def drain():
            return [await channel.receive(timeout=0.01) for _ in range(11)]

        received = asyncio.run(drain())
        assert [e.data.spent_cents for e in received[:10]] == list(range(10))
        assert received[10] is None

    def test_unsubscribe_twice_is_harmless(self):
        hub = NotificationHub()
        user_id = uuid.uuid4()
        channel, unsubscribe = hub.subscribe(user_id)

        unsubscribe()
        unsubscribe()

        assert channel.closed
        assert hub.subscriber_count(user_id) == 0

    def test_unsubscribe_removes_only_its_own_channel(self):
        hub = NotificationHub()
        user_id = uuid.uuid4()
        first, unsubscribe_first = hub.subscribe(user_id)
        second, _ = hub.subscribe(user_id)

        unsubscribe_first()
        hub.publish(user_id, _event(5))

        assert hub.subscriber_count(user_id) == 1
        assert receive(second, 0.1).data.spent_cents == 5
        with pytest.raises(ChannelClosed):
            receive(first, 0.01)

    def test_publish_without_subscribers(self):
        assert NotificationHub().publish(uuid.uuid4(), _event()) == 0

    def test_publish_stamps_utc_time(self):
        hub = NotificationHub()
        user_id = uuid.uuid4()
        channel, _ = hub.subscribe(user_id)
        original = _event()

        hub.publish(user_id, original)
        event = receive(channel, 0.1)

        assert original.timestamp is None
        assert event.timestamp.utcoffset().total_seconds() == 0

    def test_concurrent_subscribe_and_publish(self):
        hub = NotificationHub(buffer_size=1000)
        user_id = uuid.uuid4()
        errors = []

        def churn():
            try:
                for _ in range(200):
                    _, unsubscribe = hub.subscribe(user_id)
                    hub.publish(user_id, _event())
                    unsubscribe()
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

        threads = [threading.Thread(target=churn) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert hub.subscriber_count(user_id) == 0


class TestEventWireFormat:
    def test_json_envelope(self):
        plan_id = uuid.uuid4()
        event = stamp(ai_advices(plan_id, 3))
        body = json.loads(event.to_json())

        assert body["type"] == "ai_advices"
        assert body["data"] == {"plan_id": str(plan_id), "count": 3}
        assert "T" in body["timestamp"]

    def test_sse_record(self):
        event = stamp(_event(200000))
        record = event.to_sse()

        assert record.startswith("event: budget_updated\ndata: {")
        assert record.endswith("\n\n")
        payload = json.loads(record.split("data: ", 1)[1])
        assert payload["data"]["spent_cents"] == 200000

    def test_tagged_union_parses_by_type(self):
        user_id = uuid.uuid4()
        parsed = event_adapter.validate_json(stamp(connected(user_id)).to_json())
        assert parsed.type == "connected"
        assert parsed.data.user_id == user_id


class TestEventStream:
    def test_stream_sends_connected_then_events_and_unsubscribes(self):
        hub = NotificationHub()
        user_id = uuid.uuid4()
        channel, unsubscribe = hub.subscribe(user_id)
        hub.publish(user_id, _event(42))
        channel.close()

        async def collect():
            return [
                chunk
                async for chunk in event_stream(
                    user_id, channel, unsubscribe, 0.05, _never_disconnected
                )
            ]

        chunks = asyncio.run(collect())

        assert chunks[0].startswith("event: connected\n")
        assert chunks[1].startswith("event: budget_updated\n")
        assert len(chunks) == 2
        assert hub.subscriber_count(user_id) == 0

    def test_stream_emits_keepalive_when_idle(self):
        hub = NotificationHub()
        user_id = uuid.uuid4()
        channel, unsubscribe = hub.subscribe(user_id)
        calls = []

        async def disconnect_after_first_poll():
            calls.append(1)
            return len(calls) > 1

        async def collect():
            return [
                chunk
                async for chunk in event_stream(
                    user_id, channel, unsubscribe, 0.01, disconnect_after_first_poll
                )
            ]

        chunks = asyncio.run(collect())

        assert chunks[1] == ": keep-alive\n\n"
        assert channel.closed

    def test_idle_streams_leave_worker_threads_free(self):
        hub = NotificationHub()
        user_id = uuid.uuid4()
        subscriptions = [hub.subscribe(user_id) for _ in range(60)]

        async def consume(channel, unsubscribe):
            return [
                chunk
                async for chunk in event_stream(
                    user_id, channel, unsubscribe, 30, _never_disconnected
                )
            ]

        async def scenario():
            tasks = [asyncio.create_task(consume(c, u)) for c, u in subscriptions]
            await asyncio.sleep(0.1)

            answer = await asyncio.wait_for(run_in_threadpool(health), 2)
            delivered = await run_in_threadpool(hub.publish, user_id, _event(5))
            await asyncio.sleep(0.05)
            for _, unsubscribe in subscriptions:
                unsubscribe()
            return answer, delivered, await asyncio.wait_for(asyncio.gather(*tasks), 2)

        answer, delivered, streams = asyncio.run(scenario())

        assert answer == {"status": "ok"}
        assert delivered == 60
        assert all(len(chunks) == 2 for chunks in streams)
        assert all(chunks[1].startswith("event: budget_updated\n") for chunks in streams)
        assert hub.subscriber_count(user_id) == 0
