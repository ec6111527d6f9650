"""Tests for session events and the notifier."""

import asyncio
import gc

import pytest

from chatvault.bus.events import CompactionCompleted, MessageAdded, SessionCreated
from chatvault.bus.notifier import EventNotifier


def _event():
    return SessionCreated(session_id="dev-feature-f1", feature_id="f1")


class Recorder:
    def __init__(self):
        self.events = []

    def on_event(self, event):
        self.events.append(event)


class TestEvents:
    def test_to_dict(self):
        event = MessageAdded(session_id="s", feature_id="f", message_id="m1")
        data = event.to_dict()
        assert data["type"] == "message_added"
        assert data["message_id"] == "m1"
        assert data["task_id"] is None
        assert isinstance(data["timestamp"], str)

    def test_compaction_complete_fields(self):
        event = CompactionCompleted(
            session_id="s", feature_id="f", messages_compacted=6,
            tokens_reclaimed=120, new_checkpoint_version=2, compacted_at="2026-01-01T00:00:00+00:00",
        )
        assert event.type == "compaction_complete"
        assert event.to_dict()["new_checkpoint_version"] == 2


class TestEventNotifier:
    def test_delivers_to_bound_method(self):
        notifier = EventNotifier()
        recorder = Recorder()
        notifier.subscribe(recorder.on_event)

        notifier.notify(_event())

        assert [e.type for e in recorder.events] == ["created"]

    def test_collected_observer_skipped(self):
        notifier = EventNotifier()
        recorder = Recorder()
        notifier.subscribe(recorder.on_event)
        assert notifier.observer_count == 1

        del recorder
        gc.collect()

        notifier.notify(_event())
        assert notifier.observer_count == 0

    def test_strong_reference_for_lambdas(self):
        notifier = EventNotifier()
        seen = []
        notifier.subscribe(lambda e: seen.append(e.type), weak=False)
        gc.collect()

        notifier.notify(_event())
        assert seen == ["created"]

    def test_unsubscribe(self):
        notifier = EventNotifier()
        seen = []
        unsubscribe = notifier.subscribe(seen.append, weak=False)

        unsubscribe()
        notifier.notify(_event())

        assert seen == []
        assert notifier.observer_count == 0

    def test_failing_observer_isolated(self):
        notifier = EventNotifier()
        seen = []

        def broken(event):
            raise RuntimeError("observer bug")

        notifier.subscribe(broken, weak=False)
        notifier.subscribe(seen.append, weak=False)

        notifier.notify(_event())
        assert len(seen) == 1

    def test_async_observer_without_loop_dropped(self):
        notifier = EventNotifier()

        async def observer(event):
            pass

        notifier.subscribe(observer, weak=False)
        notifier.notify(_event())

    @pytest.mark.asyncio
    async def test_async_observer_awaited(self):
        notifier = EventNotifier()
        seen = []

        async def observer(event):
            await asyncio.sleep(0)
            seen.append(event.type)

        notifier.subscribe(observer, weak=False)
        notifier.notify(_event())
        await notifier.drain()

        assert seen == ["created"]

    @pytest.mark.asyncio
    async def test_async_observer_failure_logged(self):
        notifier = EventNotifier()

        async def observer(event):
            raise RuntimeError("async observer bug")

        notifier.subscribe(observer, weak=False)
        notifier.notify(_event())
        await notifier.drain()
