"""
Broadcast Hub Tests
===================

Registry mutation, fan-out and backlog isolation.
"""

import asyncio
import threading

import pytest

from conftest import make_frame
from mjpeg_relay.stream import BroadcastHub, Subscriber


def _drain(subscriber: Subscriber) -> list:
    sequences = []
    while (frame := subscriber.get_nowait()) is not None:
        sequences.append(frame.sequence)
    return sequences


class TestSubscriber:
    """Tests for the per-client queue."""

    def test_offer_respects_watermark(self):
        subscriber = Subscriber("a", capacity=10, backlog_watermark=5)

        accepted = [subscriber.offer(make_frame(i)) for i in range(8)]

        assert accepted == [True] * 5 + [False] * 3
        assert subscriber.backlog == 5
        assert subscriber.delivered == 5
        assert subscriber.dropped == 3

    def test_offer_resumes_after_drain(self):
        subscriber = Subscriber("a", capacity=10, backlog_watermark=5)
        for i in range(5):
            subscriber.offer(make_frame(i))

        assert subscriber.get_nowait().sequence == 0
        assert subscriber.offer(make_frame(99))
        assert subscriber.backlog == 5

    def test_drain(self):
        subscriber = Subscriber("a")
        for i in range(3):
            subscriber.offer(make_frame(i))

        assert subscriber.drain() == 3
        assert subscriber.backlog == 0

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            Subscriber("a", capacity=0)
        with pytest.raises(ValueError):
            Subscriber("a", capacity=5, backlog_watermark=6)


class TestRegistry:
    """Tests for register / deregister."""

    def test_register_and_deregister(self):
        hub = BroadcastHub()
        subscriber = Subscriber("client-1")

        hub.register("client-1", subscriber)
        assert "client-1" in hub
        assert len(hub) == 1

        assert hub.deregister("client-1") is True
        assert "client-1" not in hub
        assert len(hub) == 0

    def test_deregister_unknown_is_noop(self):
        hub = BroadcastHub()
        assert hub.deregister("missing") is False

    def test_subscribe_generates_unique_ids(self):
        hub = BroadcastHub()
        ids = {hub.subscribe().id for _ in range(50)}

        assert len(ids) == 50
        assert len(hub) == 50

    def test_subscribe_uses_hub_defaults(self):
        hub = BroadcastHub(queue_capacity=4, backlog_watermark=2)
        subscriber = hub.subscribe()

        assert subscriber.capacity == 4
        assert subscriber.backlog_watermark == 2

    def test_publish_after_deregister_is_noop(self):
        hub = BroadcastHub()
        subscriber = hub.subscribe()
        hub.deregister(subscriber.id)

        assert hub.publish(make_frame(1)) == 0
        assert subscriber.backlog == 0


class TestPublish:
    """Tests for fan-out."""

    def test_publish_without_subscribers(self):
        hub = BroadcastHub()

        assert hub.publish(make_frame(1)) == 0
        assert hub.metrics()["frames_published"] == 1

    def test_every_subscriber_gets_every_frame_in_order(self):
        hub = BroadcastHub()
        subscribers = [hub.subscribe() for _ in range(8)]

        for i in range(1, 5):
            assert hub.publish(make_frame(i)) == 8

        for subscriber in subscribers:
            assert _drain(subscriber) == [1, 2, 3, 4]

    def test_drained_subscribers_get_every_frame(self):
        hub = BroadcastHub()
        subscribers = [hub.subscribe() for _ in range(3)]
        received = {s.id: [] for s in subscribers}

        for i in range(1, 31):
            hub.publish(make_frame(i))
            for subscriber in subscribers:
                received[subscriber.id].extend(_drain(subscriber))

        for sequences in received.values():
            assert sequences == list(range(1, 31))

    def test_stalled_subscriber_does_not_affect_others(self):
        hub = BroadcastHub()
        stalled = hub.subscribe()
        healthy = hub.subscribe()
        received = []

        for i in range(1, 21):
            hub.publish(make_frame(i))
            received.extend(_drain(healthy))

        assert received == list(range(1, 21))
        assert _drain(stalled) == [1, 2, 3, 4, 5]
        assert stalled.dropped == 15
        assert hub.metrics()["frames_dropped"] == 15


class TestClose:
    """Tests for the closed state."""

    def test_close_wakes_waiters(self):
        async def scenario():
            hub = BroadcastHub()
            waiter = asyncio.create_task(hub.wait_closed())
            await asyncio.sleep(0)
            assert not waiter.done()

            hub.close()
            await asyncio.wait_for(waiter, timeout=1.0)
            return hub

        hub = asyncio.run(scenario())

        assert hub.closed
        assert hub.metrics()["closed"] is True

    def test_close_twice_is_noop(self):
        hub = BroadcastHub()
        hub.close()
        hub.close()

        assert hub.closed


class TestConcurrentMutation:
    """Registry mutation racing with publish."""

    def test_tasks_register_and_deregister_while_publishing(self):
        async def churn(hub: BroadcastHub, seen: list) -> None:
            for _ in range(50):
                subscriber = hub.subscribe()
                await asyncio.sleep(0)
                seen.append(_drain(subscriber))
                hub.deregister(subscriber.id)
                await asyncio.sleep(0)

        async def publisher(hub: BroadcastHub) -> None:
            for i in range(1, 201):
                hub.publish(make_frame(i))
                await asyncio.sleep(0)

        async def scenario():
            hub = BroadcastHub()
            steady = hub.subscribe(capacity=500, backlog_watermark=500)
            seen: list = []

            await asyncio.gather(
                publisher(hub),
                *(churn(hub, seen) for _ in range(10)),
            )
            hub.deregister(steady.id)
            return hub, steady, seen

        hub, steady, seen = asyncio.run(scenario())

        assert len(hub) == 0
        assert _drain(steady) == list(range(1, 201))
        for sequences in seen:
            assert sequences == sorted(set(sequences))

    def test_threads_mutate_registry_while_publishing(self):
        hub = BroadcastHub(queue_capacity=1000, backlog_watermark=1000)
        steady = hub.subscribe()
        stop = threading.Event()
        errors = []
        churned = []

        def churn():
            try:
                for n in range(2000):
                    if stop.is_set():
                        break
                    subscriber = Subscriber(f"{threading.get_ident()}-{n}", 1000, 1000)
                    hub.register(subscriber.id, subscriber)
                    churned.append(subscriber)
                    hub.deregister(subscriber.id)
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=churn) for _ in range(4)]
        for thread in threads:
            thread.start()

        try:
            for i in range(1, 501):
                hub.publish(make_frame(i))
        finally:
            stop.set()
            for thread in threads:
                thread.join()

        assert errors == []
        assert list(hub) == [steady]
        assert _drain(steady) == list(range(1, 501))
        for subscriber in churned:
            sequences = _drain(subscriber)
            assert sequences == sorted(set(sequences))
