"""Per-session ordered logs kept by the hub."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class LogEntry:
    seq: int
    sender: str
    content: str
    ts: int


@dataclass
class SessionLog:
    """Append-only log with monotonically increasing sequence numbers.

    Only the newest ``max_entries`` entries are retained; sequence numbers
    keep counting past dropped entries.
    """

    max_entries: int = 1000
    entries: deque[LogEntry] = field(default_factory=deque)
    next_seq: int = 1
    last_used: float = field(default_factory=time.monotonic)

    def append(self, sender: str, content: str, ts: int) -> LogEntry:
        entry = LogEntry(seq=self.next_seq, sender=sender, content=content, ts=ts)
        self.next_seq += 1
        self.entries.append(entry)
        while self.max_entries > 0 and len(self.entries) > self.max_entries:
            self.entries.popleft()
        self.last_used = time.monotonic()
        return entry

    def entries_since(self, seq: int) -> list[LogEntry]:
        return [e for e in self.entries if e.seq > seq]


class SessionLogStore:
    """
    Session logs plus their subscribers.

    Subscribers are opaque hashable handles (RNS links in the hub). A handle
    subscribes to a session at most once. Not thread-safe; the hub calls it
    with its state lock held.
    """

    def __init__(self, *, max_entries: int = 1000, max_sessions: int = 4096) -> None:
        self.max_entries = int(max_entries)
        self.max_sessions = int(max_sessions)
        self._logs: dict[str, SessionLog] = {}
        self._subscribers: dict[str, dict[Hashable, None]] = {}

    def get(self, session_id: str) -> SessionLog | None:
        return self._logs.get(session_id)

    def ensure(self, session_id: str) -> SessionLog:
        log = self._logs.get(session_id)
        if log is None:
            if self.max_sessions > 0 and len(self._logs) >= self.max_sessions:
                raise OverflowError("too many sessions")
            log = SessionLog(max_entries=self.max_entries)
            self._logs[session_id] = log
        return log

    def append(self, session_id: str, sender: str, content: str, ts: int) -> LogEntry:
        return self.ensure(session_id).append(sender, content, ts)

    def subscribe(self, session_id: str, handle: Hashable) -> bool:
        """Register ``handle``; returns False if it was already subscribed."""
        log = self.ensure(session_id)
        log.last_used = time.monotonic()
        subs = self._subscribers.setdefault(session_id, {})
        if handle in subs:
            return False
        subs[handle] = None
        return True

    def unsubscribe(self, session_id: str, handle: Hashable) -> bool:
        subs = self._subscribers.get(session_id)
        if not subs or handle not in subs:
            return False
        subs.pop(handle, None)
        if not subs:
            self._subscribers.pop(session_id, None)
        log = self._logs.get(session_id)
        if log is not None:
            log.last_used = time.monotonic()
        return True

    def drop_handle(self, handle: Hashable) -> list[str]:
        """Remove ``handle`` from every session; returns the affected session ids."""
        affected = [sid for sid, subs in self._subscribers.items() if handle in subs]
        for sid in affected:
            self.unsubscribe(sid, handle)
        return affected

    def subscribers(self, session_id: str) -> list[Hashable]:
        return list(self._subscribers.get(session_id, {}))

    def prune_idle(self, idle_s: float, *, now: float | None = None) -> list[str]:
        """Drop logs with no subscribers that have been idle for ``idle_s``."""
        if idle_s <= 0:
            return []
        t = time.monotonic() if now is None else now
        stale = [
            sid
            for sid, log in self._logs.items()
            if sid not in self._subscribers and (t - log.last_used) > idle_s
        ]
        for sid in stale:
            self._logs.pop(sid, None)
        return stale

    def clear(self) -> None:
        self._logs.clear()
        self._subscribers.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "sessions": len(self._logs),
            "subscribed_sessions": len(self._subscribers),
            "subscriptions": sum(len(s) for s in self._subscribers.values()),
            "entries": sum(len(log.entries) for log in self._logs.values()),
        }
