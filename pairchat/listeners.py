from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from .models import Message

MessageListener = Callable[[Message], None]
ConnectionListener = Callable[[bool], None]


class ListenerRegistry:
    """
    Observer registry for message and connection-state events.

    Listeners are keyed by the callable itself, so registering the same
    callable twice has no additional effect and removing an unknown one is a
    no-op. Fan-out works on a snapshot taken under the lock, so listeners may
    add or remove listeners while being notified.

    A listener that raises is logged and skipped; it never stops delivery to
    the others and never propagates to the notifier.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("pairchat.listeners")
        self._lock = threading.Lock()
        self._message: dict[MessageListener, MessageListener] = {}
        self._connection: dict[ConnectionListener, ConnectionListener] = {}

    def add_message_listener(self, fn: MessageListener) -> MessageListener:
        with self._lock:
            self._message.setdefault(fn, fn)
        return fn

    def remove_message_listener(self, fn: MessageListener) -> None:
        with self._lock:
            self._message.pop(fn, None)

    def add_connection_listener(self, fn: ConnectionListener) -> ConnectionListener:
        with self._lock:
            self._connection.setdefault(fn, fn)
        return fn

    def remove_connection_listener(self, fn: ConnectionListener) -> None:
        with self._lock:
            self._connection.pop(fn, None)

    def notify_message(self, message: Message) -> None:
        with self._lock:
            snapshot = list(self._message.values())

        for fn in snapshot:
            try:
                fn(message)
            except Exception:
                self.log.exception(
                    "Message listener failed session=%s listener=%r",
                    message.session_id,
                    fn,
                )

    def notify_connection(self, connected: bool) -> None:
        with self._lock:
            snapshot = list(self._connection.values())

        for fn in snapshot:
            try:
                fn(bool(connected))
            except Exception:
                self.log.exception(
                    "Connection listener failed connected=%s listener=%r",
                    connected,
                    fn,
                )

    def counts(self) -> tuple[int, int]:
        with self._lock:
            return len(self._message), len(self._connection)

    def clear(self) -> None:
        with self._lock:
            self._message.clear()
            self._connection.clear()
