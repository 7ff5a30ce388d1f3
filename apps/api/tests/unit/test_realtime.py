import asyncio
import logging
import threading

from app.integrations import realtime
from app.integrations.realtime import ConnectionHub, publish_safely, rider_channel, user_channel
from app.observability import metrics_store


def test_channel_names():
    assert user_channel("user-1") == "user:user-1"
    assert rider_channel("rider-7") == "rider:rider-7"


def test_publish_reaches_only_subscribers_of_the_channel():
    hub = ConnectionHub()

    async def scenario():
        mine = hub.subscribe("user:user-1")
        theirs = hub.subscribe("user:user-2")
        hub.publish("user:user-1", "order_status_update", {"status": "preparing"})
        message = await asyncio.wait_for(mine.queue.get(), timeout=1)
        return message, theirs.queue.qsize()

    message, other_pending = asyncio.run(scenario())

    assert message["channel"] == "user:user-1"
    assert message["event"] == "order_status_update"
    assert message["payload"] == {"status": "preparing"}
    assert "published_at" in message
    assert other_pending == 0


def test_publish_from_a_worker_thread_is_delivered_on_the_loop():
    hub = ConnectionHub()

    async def scenario():
        subscriber = hub.subscribe("rider:rider-7")
        worker = threading.Thread(
            target=hub.publish, args=("rider:rider-7", "order_update", {"n": 1})
        )
        worker.start()
        worker.join()
        return await asyncio.wait_for(subscriber.queue.get(), timeout=1)

    assert asyncio.run(scenario())["payload"] == {"n": 1}


def test_full_subscriber_queue_drops_instead_of_blocking(monkeypatch):
    monkeypatch.setattr(realtime, "SUBSCRIBER_QUEUE_SIZE", 1)
    hub = ConnectionHub()

    async def scenario():
        subscriber = hub.subscribe("user:user-1")
        hub.publish("user:user-1", "a", {})
        hub.publish("user:user-1", "b", {})
        await asyncio.sleep(0)
        return subscriber.queue.qsize()

    assert asyncio.run(scenario()) == 1
    assert metrics_store.counter("realtime_dropped_total") == 1


def test_unsubscribe_and_closed_loops_are_pruned():
    hub = ConnectionHub()

    async def subscribe_and_leave():
        stays = hub.subscribe("user:user-1")
        hub.subscribe("user:user-1")
        return stays

    stale = asyncio.run(subscribe_and_leave())
    assert hub.subscriber_count("user:user-1") == 2

    hub.unsubscribe("user:user-1", stale)
    hub.publish("user:user-1", "order_status_update", {})

    assert hub.subscriber_count("user:user-1") == 0


def test_publish_safely_logs_and_counts_notifier_failures(exploding_notifier, caplog):
    with caplog.at_level(logging.WARNING):
        publish_safely(exploding_notifier, "user:user-1", "order_status_update", {})

    assert metrics_store.counter("realtime_publish_failed_total") == 1
    assert "realtime_publish_failed" in caplog.text
