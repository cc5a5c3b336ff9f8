from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from collections.abc import Callable

from linksweep.models import utcnow

logger = logging.getLogger(__name__)

EVENT_CHECKING_STARTED = "checking_started"
EVENT_PROGRESS_UPDATE = "progress_update"
EVENT_BOOKMARK_REMOVED = "bookmark_removed"
EVENT_CHECKING_COMPLETE = "checking_complete"
EVENT_CHECKING_STOPPED = "checking_stopped"
EVENT_CHECKING_ERROR = "checking_error"
EVENT_SNAPSHOT_CAPTURED = "snapshot_captured"
EVENT_SNAPSHOT_RESTORED = "snapshot_restored"

TERMINAL_EVENTS = {
    EVENT_CHECKING_COMPLETE,
    EVENT_CHECKING_STOPPED,
    EVENT_CHECKING_ERROR,
}


class EventChannel:
    """Fire-and-forget broadcast to registered observers.

    Published events are also kept in a bounded history so observers that
    poll (the HTTP API) can catch up with ``history(after=...)``.
    """

    def __init__(self, history_size: int = 200):
        self._lock = threading.Lock()
        self._subscribers: dict[int, Callable[[dict], None]] = {}
        self._tokens = itertools.count(1)
        self._ids = itertools.count(1)
        self._history: deque[dict] = deque(maxlen=max(1, history_size))

    def subscribe(self, callback: Callable[[dict], None]) -> int:
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def publish(self, event_type: str, **payload) -> dict:
        with self._lock:
            event = {
                "id": next(self._ids),
                "type": event_type,
                "emitted_at": utcnow().isoformat(),
                **payload,
            }
            self._history.append(event)
            subscribers = list(self._subscribers.values())

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event observer failed on %s", event_type)
        return event

    def history(self, after: int = 0) -> list[dict]:
        with self._lock:
            return [event for event in self._history if event["id"] > after]
