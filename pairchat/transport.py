from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from typing import Protocol

from .errors import TransportError
from .models import Message

OnMessage = Callable[[Message], None]


class PubSubBackend(Protocol):
    """A hosted ordered log addressable by session id."""

    def is_available(self, endpoint: str = "") -> bool: ...

    def connect(self, endpoint: str) -> bool: ...

    def subscribe(
        self,
        session_id: str,
        callback: Callable[[int, Message], None],
        since: int = 0,
        on_lost: Callable[[], None] | None = None,
    ) -> Callable[[], None]:
        """Deliver entries after ``since`` to ``callback``, then live ones.

        Raises TransportError when the log refuses the subscription.
        ``on_lost`` is called once if the subscription dies on its own.
        """
        ...

    def append(self, session_id: str, sender: str, content: str) -> bool: ...

    def close(self) -> None: ...


class Transport:
    """Moves messages for one session at a time."""

    # True when publish() itself hands the message to the local listeners.
    delivers_locally = False

    name = "transport"

    # Set by the owner before activate(); called when the transport drops
    # out from under an active session.
    on_lost: Callable[[], None] | None = None

    def activate(self, session_id: str, on_message: OnMessage) -> bool:
        raise NotImplementedError

    def publish(self, message: Message) -> bool:
        raise NotImplementedError

    def deactivate(self) -> None:
        raise NotImplementedError

    @property
    def session_id(self) -> str | None:
        return None


class LocalTransport(Transport):
    """In-process delivery for single-device use when no backend is configured."""

    delivers_locally = True
    name = "local"

    def __init__(self) -> None:
        self.log = logging.getLogger("pairchat.transport.local")
        self._lock = threading.Lock()
        self._session_id: str | None = None
        self._on_message: OnMessage | None = None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def activate(self, session_id: str, on_message: OnMessage) -> bool:
        with self._lock:
            self._session_id = session_id
            self._on_message = on_message
        self.log.debug("Local transport active session=%s", session_id)
        return True

    def publish(self, message: Message) -> bool:
        with self._lock:
            session_id = self._session_id
            on_message = self._on_message
        if session_id is None or on_message is None:
            raise TransportError("local transport is not active")
        if message.session_id != session_id:
            raise TransportError(
                f"message for session {message.session_id!r} on {session_id!r}"
            )
        on_message(message)
        return True

    def deactivate(self) -> None:
        with self._lock:
            session_id = self._session_id
            self._session_id = None
            self._on_message = None
        if session_id is not None:
            self.log.debug("Local transport released session=%s", session_id)


class RemotePubSubTransport(Transport):
    """
    Delivery through a remote per-session ordered log.

    Publishing appends to the log; every subscriber, including this device,
    receives the entry back through the subscription. Only one subscription
    exists per session id, and entries are delivered strictly in increasing
    log sequence, so replays after a resubscribe never deliver twice.
    """

    name = "remote"

    def __init__(self, backend: PubSubBackend, endpoint: str = "") -> None:
        self.log = logging.getLogger("pairchat.transport.remote")
        self.backend = backend
        self.endpoint = endpoint
        self._lock = threading.Lock()
        self._session_id: str | None = None
        self._on_message: OnMessage | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._last_seq = 0

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def activate(self, session_id: str, on_message: OnMessage) -> bool:
        with self._lock:
            if self._session_id == session_id and self._unsubscribe is not None:
                self._on_message = on_message
                self.log.debug("Already subscribed session=%s", session_id)
                return True

        if self._session_id is not None:
            self.deactivate()

        if not self.backend.connect(self.endpoint):
            self.log.warning(
                "Backend not reachable endpoint=%r session=%s",
                self.endpoint,
                session_id,
            )
            return False

        with self._lock:
            self._session_id = session_id
            self._on_message = on_message
            self._last_seq = 0

        try:
            unsubscribe = self.backend.subscribe(
                session_id, self._on_entry, since=0, on_lost=self._on_backend_lost
            )
        except TransportError as e:
            with self._lock:
                self._session_id = None
                self._on_message = None
            self.log.warning("Subscription refused session=%s err=%s", session_id, e)
            return False

        with self._lock:
            self._unsubscribe = unsubscribe

        self.log.info("Subscribed session=%s endpoint=%r", session_id, self.endpoint)
        return True

    def _on_backend_lost(self) -> None:
        with self._lock:
            session_id = self._session_id
            self._session_id = None
            self._on_message = None
            self._unsubscribe = None
        if session_id is None:
            return
        self.log.warning("Subscription lost session=%s endpoint=%r", session_id, self.endpoint)
        on_lost = self.on_lost
        if on_lost is not None:
            on_lost()

    def _on_entry(self, seq: int, message: Message) -> None:
        with self._lock:
            if message.session_id != self._session_id:
                return
            if seq <= self._last_seq:
                self.log.debug(
                    "Dropping duplicate entry session=%s seq=%s last=%s",
                    message.session_id,
                    seq,
                    self._last_seq,
                )
                return
            self._last_seq = seq
            on_message = self._on_message

        if message.seq != seq:
            message = replace(message, seq=seq)
        if on_message is not None:
            on_message(message)

    def publish(self, message: Message) -> bool:
        if self._session_id is None:
            raise TransportError("remote transport is not active")
        return bool(
            self.backend.append(message.session_id, message.sender, message.content)
        )

    def deactivate(self) -> None:
        with self._lock:
            unsubscribe = self._unsubscribe
            session_id = self._session_id
            self._unsubscribe = None
            self._session_id = None
            self._on_message = None

        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception:
                self.log.warning(
                    "Unsubscribe failed session=%s", session_id, exc_info=True
                )
            self.log.info("Unsubscribed session=%s", session_id)


def select_transport(
    backend: PubSubBackend | None, endpoint: str = ""
) -> Transport:
    """Pick the remote transport when a usable backend exists, else local."""
    log = logging.getLogger("pairchat.transport")
    if backend is not None:
        try:
            available = bool(backend.is_available(endpoint))
        except Exception:
            log.warning("Backend availability check failed", exc_info=True)
            available = False
        if available:
            return RemotePubSubTransport(backend, endpoint)
        log.info("Remote backend not configured; using local transport")
    return LocalTransport()
