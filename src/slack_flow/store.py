"""In-memory relay state: thread sessions, handled messages and poll watermarks.

Nothing here survives a restart. The locks only make single operations
atomic; read-modify-write sequences are serialized by the poll loop.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable

from .models import ThreadKey, ThreadSession, ts_value


class SessionStore:
    """Thread sessions keyed by (channel, thread root ts)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[ThreadKey, ThreadSession] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, key: ThreadKey) -> ThreadSession | None:
        with self._lock:
            return self._sessions.get(key)

    def put(self, key: ThreadKey, session: ThreadSession) -> None:
        with self._lock:
            self._sessions[key] = session

    def threads_in_channel(self, channel_id: str) -> list[ThreadKey]:
        with self._lock:
            return [key for key in self._sessions if key.channel_id == channel_id]


class DedupLedger:
    """Messages already routed, keyed by (channel, ts).

    Slack ts values are only unique within one channel.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: set[tuple[str, str]] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def seen(self, channel_id: str, message_id: str) -> bool:
        with self._lock:
            return (channel_id, message_id) in self._seen

    def mark_seen(self, channel_id: str, message_id: str) -> None:
        with self._lock:
            self._seen.add((channel_id, message_id))

    def claim(self, channel_id: str, message_id: str) -> bool:
        """Mark a message as seen; return False if it already was."""
        key = (channel_id, message_id)
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True


class WatermarkTable:
    """Latest Slack ts observed per poll source; only ever moves forward."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._marks: dict[Hashable, str] = {}

    def get(self, source: Hashable, default: str | None = None) -> str | None:
        with self._lock:
            return self._marks.get(source, default)

    def advance(self, source: Hashable, ts: str) -> str:
        """Move the watermark to `ts` unless it is already past it."""
        with self._lock:
            current = self._marks.get(source)
            if current is None or ts_value(ts) > ts_value(current):
                self._marks[source] = ts
            return self._marks[source]
