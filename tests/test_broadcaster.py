"""Tests for the progress broadcaster."""

import asyncio

from repolens import events
from repolens.broadcaster import ProgressBroadcaster

from conftest import FakeScheduler


async def _drain(sub):
    return [event async for event in sub]


class TestPublish:
    def test_no_subscribers_is_noop_but_updates_snapshot(self, broadcaster):
        broadcaster.open("a1")
        delivered = broadcaster.publish(events.progress("a1", "fetching"))
        assert delivered == 0
        snapshot = broadcaster.snapshot("a1")
        assert snapshot["status"] == "analyzing"
        assert snapshot["stage"] == "fetching"
        assert snapshot["percent"] == 10

    def test_late_subscriber_gets_snapshot_not_history(self, broadcaster, scheduler):
        async def run():
            broadcaster.open("a1")
            broadcaster.publish(events.started("a1", "https://github.com/a/b"))
            broadcaster.publish(events.progress("a1", "walking"))
            sub = broadcaster.subscribe("a1")
            broadcaster.publish(events.completed("a1", {"totalFiles": 1}))
            scheduler.fire_all()
            return sub, await _drain(sub)

        sub, received = asyncio.run(run())
        assert sub.snapshot["stage"] == "walking"
        assert [e.type for e in received] == [events.EventType.COMPLETED]

    def test_order_preserved_per_subscriber(self, broadcaster, scheduler):
        async def run():
            broadcaster.open("a1")
            sub = broadcaster.subscribe("a1")
            for stage in events.STAGES:
                broadcaster.publish(events.progress("a1", stage))
            broadcaster.publish(events.completed("a1", {}))
            scheduler.fire_all()
            return await _drain(sub)

        received = asyncio.run(run())
        assert [e.payload.get("stage") for e in received[:-1]] == list(events.STAGES)
        assert received[-1].type == events.EventType.COMPLETED

    def test_topics_are_isolated(self, broadcaster):
        async def run():
            sub_a = broadcaster.subscribe("a")
            broadcaster.subscribe("b")
            broadcaster.publish(events.progress("b", "fetching"))
            broadcaster.unsubscribe(sub_a)
            return await _drain(sub_a)

        assert asyncio.run(run()) == []


class TestTeardown:
    def test_terminal_event_schedules_teardown(self, broadcaster, scheduler):
        async def run():
            broadcaster.open("a1")
            sub = broadcaster.subscribe("a1")
            broadcaster.publish(events.failed("a1", "Failed to clone repository"))
            assert len(scheduler.timers) == 1
            assert scheduler.timers[0].delay == 5.0
            # Still readable during the grace period
            assert broadcaster.snapshot("a1")["status"] == "failed"
            scheduler.fire_all()
            return await _drain(sub)

        received = asyncio.run(run())
        assert [e.type for e in received] == [events.EventType.FAILED]
        assert not broadcaster.has_topic("a1")
        assert broadcaster.snapshot("a1") is None

    def test_reopen_cancels_pending_teardown(self, broadcaster, scheduler):
        broadcaster.open("a1")
        broadcaster.publish(events.completed("a1", {}))
        timer = scheduler.timers[0]
        broadcaster.open("a1")
        assert timer.cancelled
        assert broadcaster.snapshot("a1")["status"] == "analyzing"

    def test_unsubscribe_drops_unopened_topic(self, broadcaster):
        sub = broadcaster.subscribe("ghost")
        assert broadcaster.has_topic("ghost")
        broadcaster.unsubscribe(sub)
        assert not broadcaster.has_topic("ghost")
        assert sub.closed

    def test_default_scheduler_uses_loop_timer(self):
        async def run():
            broadcaster = ProgressBroadcaster(grace_period=0.01)
            broadcaster.open("a1")
            sub = broadcaster.subscribe("a1")
            broadcaster.publish(events.completed("a1", {}))
            received = await asyncio.wait_for(_drain(sub), timeout=2)
            return broadcaster, received

        broadcaster, received = asyncio.run(run())
        assert len(received) == 1
        assert not broadcaster.has_topic("a1")


class TestConcurrentSubscribers:
    def test_both_receive_completed_once_in_order(self):
        """One subscriber joins before the run starts, one while it is analyzing."""
        scheduler = FakeScheduler()
        broadcaster = ProgressBroadcaster(scheduler=scheduler)

        async def run():
            early = broadcaster.subscribe("a1")
            broadcaster.open("a1")
            broadcaster.publish(events.started("a1", "https://github.com/a/b"))
            broadcaster.publish(events.progress("a1", "fetching"))
            late = broadcaster.subscribe("a1")
            broadcaster.publish(events.progress("a1", "walking"))
            broadcaster.publish(events.completed("a1", {}))
            scheduler.fire_all()
            return await asyncio.gather(_drain(early), _drain(late))

        early, late = asyncio.run(run())
        assert [e.type for e in early].count(events.EventType.COMPLETED) == 1
        assert [e.type for e in late].count(events.EventType.COMPLETED) == 1
        assert [e.payload.get("stage") for e in late] == ["walking", None]
        # Late subscriber saw a suffix of what the early one saw, in the same order
        assert early[-len(late):] == late
