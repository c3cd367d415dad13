from __future__ import annotations

import threading
import time

import pytest

from pairchat.errors import TransportError
from pairchat.listeners import ListenerRegistry
from pairchat.logs import SessionLogStore
from pairchat.models import Message
from pairchat.storage import SqliteStore


class FakeBackend:
    """In-memory stand-in for the hub: one ordered log per session."""

    def __init__(
        self,
        *,
        available: bool = True,
        reachable: bool = True,
        refuse_subscribe: bool = False,
        connect_delay: float = 0.0,
    ) -> None:
        self.available = available
        self.reachable = reachable
        self.refuse_subscribe = refuse_subscribe
        self.connect_delay = connect_delay
        self.logs = SessionLogStore()
        self.callbacks: dict[str, list] = {}
        self.lost: dict[str, list] = {}
        self.subscribe_calls: list[tuple[str, int]] = []
        self.connect_calls: list[str] = []
        self.released = threading.Event()
        self.closed = False
        self.ts = 1000

    def is_available(self, endpoint: str = "") -> bool:
        return self.available

    def connect(self, endpoint: str = "") -> bool:
        self.connect_calls.append(endpoint)
        if self.connect_delay:
            time.sleep(self.connect_delay)
        return self.reachable

    def subscribe(self, session_id, callback, since: int = 0, on_lost=None):
        self.subscribe_calls.append((session_id, since))
        if self.refuse_subscribe:
            raise TransportError("too many sessions")
        self.callbacks.setdefault(session_id, []).append(callback)
        if on_lost is not None:
            self.lost.setdefault(session_id, []).append(on_lost)
        log = self.logs.get(session_id)
        if log is not None:
            for entry in log.entries_since(since):
                callback(entry.seq, self._message(session_id, entry))

        def unsubscribe() -> None:
            cbs = self.callbacks.get(session_id, [])
            if callback in cbs:
                cbs.remove(callback)
            if on_lost in self.lost.get(session_id, []):
                self.lost[session_id].remove(on_lost)
            self.released.set()

        return unsubscribe

    def live(self, session_id: str) -> int:
        return len(self.callbacks.get(session_id, []))

    def drop_link(self) -> None:
        """Simulate the hub link closing under every subscription."""
        lost = [cb for cbs in self.lost.values() for cb in cbs]
        self.callbacks.clear()
        self.lost.clear()
        for cb in lost:
            cb()

    def append(self, session_id: str, sender: str, content: str) -> bool:
        self.ts += 1
        entry = self.logs.append(session_id, sender, content, self.ts)
        for cb in list(self.callbacks.get(session_id, [])):
            cb(entry.seq, self._message(session_id, entry))
        return True

    def redeliver(self, session_id: str, seq: int) -> None:
        log = self.logs.get(session_id)
        for entry in log.entries:
            if entry.seq == seq:
                for cb in list(self.callbacks.get(session_id, [])):
                    cb(entry.seq, self._message(session_id, entry))

    def close(self) -> None:
        self.closed = True

    @staticmethod
    def _message(session_id, entry) -> Message:
        return Message(
            session_id=session_id,
            sender=entry.sender,
            content=entry.content,
            timestamp_ms=entry.ts,
            seq=entry.seq,
        )


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def store():
    s = SqliteStore(":memory:")
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def registry() -> ListenerRegistry:
    return ListenerRegistry()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()
