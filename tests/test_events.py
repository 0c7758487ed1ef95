"""Tests for the dashboard activity feed."""

import json
import logging
import threading
import time

import pytest

from intent_tracker.webapp.services import event_system
from intent_tracker.webapp.services.event_system import (
    EventFeed,
    FeedLogHandler,
    clear_events,
    emit_event,
    event_stream,
    get_events,
)


@pytest.fixture(autouse=True)
def empty_feed():
    clear_events()
    yield
    clear_events()


class TestEventFeed:
    def test_history_is_bounded(self):
        feed = EventFeed(size=3)
        for n in range(5):
            feed.publish({"step": "tick", "n": n})
        assert [e["n"] for e in feed.recent()] == [2, 3, 4]
        assert [e["n"] for e in feed.recent(limit=1)] == [4]

    def test_stalled_subscriber_is_dropped(self):
        feed = EventFeed(size=1)
        stalled = feed.subscribe()
        feed.publish({"step": "a"})
        feed.publish({"step": "b"})

        assert stalled.get_nowait()["step"] == "a"
        live = feed.subscribe()
        feed.publish({"step": "c"})
        assert stalled.empty()
        assert live.get_nowait()["step"] == "c"


class TestModuleFeed:
    def test_emit_and_filter(self):
        emit_event("page_submitted", "Stored page", payload={"page_id": "p1"})
        emit_event("task_failed", "Boom", level="error")

        events = get_events(step="page_submitted")
        assert len(events) == 1
        assert events[0]["payload"] == {"page_id": "p1"}
        assert events[0]["level"] == "info"
        assert len(get_events()) == 2

    def test_stream_frames_and_unsubscribes(self):
        subscribed = len(event_system._feed._subscribers)
        stream = event_stream()

        def publish_once_subscribed():
            deadline = time.time() + 5
            while len(event_system._feed._subscribers) == subscribed and time.time() < deadline:
                time.sleep(0.01)
            emit_event("intent_created", "New intent")

        publisher = threading.Thread(target=publish_once_subscribed)
        publisher.start()
        frame = next(stream)
        publisher.join(timeout=5)

        assert frame.startswith("data: ")
        assert json.loads(frame[len("data: "):])["step"] == "intent_created"
        stream.close()
        assert len(event_system._feed._subscribers) == subscribed

    def test_log_records_are_mirrored(self):
        handler = FeedLogHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        record = logging.LogRecord("intent_tracker.engine", logging.WARNING, __file__, 1,
                                   "Slow oracle", None, None)
        handler.emit(record)

        event = get_events()[-1]
        assert event["level"] == "warning"
        assert event["step"] == "intent_tracker.engine"
        assert event["message"] == "Slow oracle"

    def test_own_debug_lines_are_not_mirrored(self):
        handler = FeedLogHandler()
        record = logging.LogRecord(event_system.__name__, logging.DEBUG, __file__, 1,
                                   "[x] y", None, None)
        handler.emit(record)
        assert get_events() == []
