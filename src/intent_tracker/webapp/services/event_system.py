"""
Activity feed for the dashboard.

Task lifecycle, intent and merge events are kept in a bounded ring and
fanned out to every open Server-Sent Events subscriber. Log records from
the rest of the package can be mirrored into the same feed.
"""

import json
import logging
import queue
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Dict, Generator, List, Optional

FEED_SIZE = 1000

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventFeed:
    """Bounded history plus live subscriber queues, guarded by one lock."""

    def __init__(self, size: int = FEED_SIZE):
        self.size = size
        self._history = deque(maxlen=size)
        self._subscribers: List[queue.Queue] = []
        self._lock = threading.Lock()

    def publish(self, event: Dict):
        with self._lock:
            self._history.append(event)
            # a subscriber that stopped reading is dropped
            self._subscribers = [q for q in self._subscribers if self._offer(q, event)]

    @staticmethod
    def _offer(subscriber: queue.Queue, event: Dict) -> bool:
        try:
            subscriber.put_nowait(event)
        except queue.Full:
            return False
        return True

    def subscribe(self) -> queue.Queue:
        subscriber = queue.Queue(maxsize=self.size)
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue):
        with self._lock:
            self._subscribers = [q for q in self._subscribers if q is not subscriber]

    def recent(self, step: Optional[str] = None, limit: int = 200) -> List[Dict]:
        with self._lock:
            history = list(self._history)
        if step:
            history = [e for e in history if e["step"] == step]
        return history[-limit:] if limit > 0 else []

    def clear(self):
        with self._lock:
            self._history.clear()


_feed = EventFeed()


def _publish_event(event: Dict):
    _feed.publish(event)


def emit_event(step: str, message: str, level: str = "info", payload: Optional[Dict] = None):
    """
    Record a pipeline step on the activity feed.

    Args:
        step: Machine-readable event name, e.g. ``task_completed``
        message: Human-readable line for the dashboard
        level: Log level name
        payload: Extra identifiers (task, page or intent ids)
    """
    _publish_event({
        "ts": _now_iso(),
        "level": level,
        "step": step,
        "message": message,
        "payload": payload or {},
    })
    logger.debug(f"[{step}] {message}")


class FeedLogHandler(logging.Handler):
    """Copy log records onto the activity feed."""

    def emit(self, record: logging.LogRecord):
        # our own debug echo of emit_event would duplicate every event
        if record.name == __name__:
            return
        try:
            _publish_event({
                "ts": _now_iso(),
                "level": record.levelname.lower(),
                "step": getattr(record, "step", record.name),
                "message": self.format(record),
                "payload": getattr(record, "payload", None) or {},
            })
        except Exception:
            self.handleError(record)


def init_event_logging(level: int = logging.INFO):
    """Install the feed handler on the root logger unless already present."""
    root = logging.getLogger()
    if any(isinstance(h, FeedLogHandler) for h in root.handlers):
        return
    handler = FeedLogHandler(level=level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    if root.level > level:
        root.setLevel(level)
    for noisy in ("werkzeug", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def event_stream() -> Generator[str, None, None]:
    """Yield feed events as Server-Sent Events frames until the client leaves."""
    subscriber = _feed.subscribe()
    try:
        while True:
            yield f"data: {json.dumps(subscriber.get())}\n\n"
    finally:
        _feed.unsubscribe(subscriber)


def get_events(step: Optional[str] = None, limit: int = 200) -> List[Dict]:
    """Most recent events, oldest first, optionally for one step."""
    return _feed.recent(step=step, limit=limit)


def clear_events():
    _feed.clear()
