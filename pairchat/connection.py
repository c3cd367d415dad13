from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any, Protocol

from .config import RetryPolicy
from .envelope import now_ms
from .listeners import ListenerRegistry
from .models import ConnectionDescriptor, ConnectionState, Message
from .transport import Transport

TransportFactory = Callable[[ConnectionDescriptor], Transport]


class DescriptorStore(Protocol):
    def save_descriptor(self, descriptor: ConnectionDescriptor) -> None: ...

    def load_descriptor(self) -> ConnectionDescriptor | None: ...

    def delete_descriptor(self) -> None: ...


class ConnectionManager:
    """
    Owns the active session and drives its transport.

    State machine::

        DISCONNECTED --establish--> CONNECTING --ready--> CONNECTED
        CONNECTING --failure/timeout--> DISCONNECTED
        CONNECTED --disconnect--> DISCONNECTED

    Transitions are serialized with a re-entrant lock. Listener notifications
    happen outside the lock so listeners may call back into the manager.

    The descriptor is persisted before activation so an interrupted
    establishment can still be resumed with restore().
    """

    def __init__(
        self,
        store: DescriptorStore,
        listeners: ListenerRegistry,
        transport_factory: TransportFactory,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.listeners = listeners
        self.transport_factory = transport_factory
        self.policy = policy or RetryPolicy()
        self.log = logging.getLogger("pairchat.connection")

        self._sleep = sleep
        self._clock = clock
        self._lock = threading.RLock()

        self._state = ConnectionState.DISCONNECTED
        self._descriptor: ConnectionDescriptor | None = None
        self._transport: Transport | None = None
        # Transport whose inbound messages are currently accepted. Set while
        # CONNECTING so replayed entries received during activation count.
        self._accepting: Transport | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def descriptor(self) -> ConnectionDescriptor | None:
        return self._descriptor

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def session_id(self) -> str | None:
        d = self._descriptor
        return d.session_id if d is not None else None

    @property
    def local_user_name(self) -> str | None:
        d = self._descriptor
        return d.local_user_name if d is not None else None

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def establish(
        self, descriptor: ConnectionDescriptor, transport: Transport | None = None
    ) -> bool:
        if not descriptor.session_id or not descriptor.local_user_name:
            raise ValueError("descriptor needs a session id and a local user name")

        with self._lock:
            previous = self._transport
            self._transport = None
            self._descriptor = None
            self._accepting = None
            if previous is not None:
                self.log.info(
                    "Replacing active connection session=%s", previous.session_id
                )
                self._deactivate_quietly(previous)

            self._state = ConnectionState.CONNECTING

            try:
                self.store.save_descriptor(descriptor)
                if transport is None:
                    transport = self.transport_factory(descriptor)
            except Exception:
                self._state = ConnectionState.DISCONNECTED
                raise

            active = transport
            active.on_lost = lambda: self._on_transport_lost(active)
            self._accepting = active

            ready = self._activate(active, descriptor)

            if ready:
                self._transport = active
                self._descriptor = descriptor
                self._state = ConnectionState.CONNECTED
            else:
                self._deactivate_quietly(active)
                self._state = ConnectionState.DISCONNECTED
                self._accepting = None

        if ready:
            self.log.info(
                "Connected session=%s user=%r transport=%s",
                descriptor.session_id,
                descriptor.local_user_name,
                active.name,
            )
        else:
            self.log.warning(
                "Connection failed session=%s transport=%s",
                descriptor.session_id,
                active.name,
            )
        self.listeners.notify_connection(ready)
        return ready

    def _activate(self, transport: Transport, descriptor: ConnectionDescriptor) -> bool:
        """Run transport activation on a worker thread, bounded by the policy timeout.

        A worker that finishes after the deadline releases its transport itself,
        so a late subscription never outlives the attempt that started it.
        """
        result: dict[str, Any] = {}
        done = threading.Event()
        gate = threading.Lock()

        def on_message(message: Message) -> None:
            self._on_transport_message(transport, descriptor, message)

        def run() -> None:
            try:
                result["ready"] = bool(transport.activate(descriptor.session_id, on_message))
            except Exception as e:
                result["error"] = e
            with gate:
                abandoned = result.get("abandoned", False)
                done.set()
            if abandoned:
                self.log.info(
                    "Releasing late activation session=%s", descriptor.session_id
                )
                self._deactivate_quietly(transport)

        worker = threading.Thread(target=run, name="pairchat-activate", daemon=True)
        worker.start()

        if not done.wait(self.policy.timeout_s):
            with gate:
                if not done.is_set():
                    result["abandoned"] = True
            if result.get("abandoned"):
                self.log.warning(
                    "Activation timed out after %sms session=%s",
                    self.policy.timeout_ms,
                    descriptor.session_id,
                )
                return False

        err = result.get("error")
        if err is not None:
            self.log.warning(
                "Activation error session=%s err=%s", descriptor.session_id, err
            )
            return False
        return bool(result.get("ready"))

    def _on_transport_message(
        self, transport: Transport, descriptor: ConnectionDescriptor, message: Message
    ) -> None:
        if self._accepting is not transport:
            self.log.debug(
                "Dropping message from inactive transport session=%s", message.session_id
            )
            return
        own = message.sender == descriptor.local_user_name
        if message.is_own != own:
            message = replace(message, is_own=own)
        self.listeners.notify_message(message)

    def _on_transport_lost(self, transport: Transport) -> None:
        with self._lock:
            if self._transport is not transport:
                return
            descriptor = self._descriptor
            self._transport = None
            self._descriptor = None
            self._accepting = None
            self._state = ConnectionState.DISCONNECTED

        self._deactivate_quietly(transport)
        # The stored descriptor stays, so restore() can reconnect.
        self.log.warning(
            "Connection lost session=%s", descriptor.session_id if descriptor else None
        )
        self.listeners.notify_connection(False)

    def _deactivate_quietly(self, transport: Transport) -> None:
        try:
            transport.deactivate()
        except Exception:
            self.log.warning("Transport deactivate failed", exc_info=True)

    def disconnect(self) -> None:
        with self._lock:
            transport = self._transport
            descriptor = self._descriptor
            self._transport = None
            self._descriptor = None
            self._accepting = None
            self._state = ConnectionState.DISCONNECTED

            if transport is not None:
                self._deactivate_quietly(transport)

            try:
                self.store.delete_descriptor()
            except Exception:
                self.log.error("Error removing connection info", exc_info=True)

        if descriptor is not None:
            self.log.info("Disconnected session=%s", descriptor.session_id)
        self.listeners.notify_connection(False)

    def send(self, content: str) -> bool:
        with self._lock:
            transport = self._transport
            descriptor = self._descriptor
            connected = self._state is ConnectionState.CONNECTED

        if not connected or transport is None or descriptor is None:
            self.log.error("No active session for sending message")
            return False

        message = Message(
            session_id=descriptor.session_id,
            sender=descriptor.local_user_name,
            content=content,
            timestamp_ms=self._clock(),
            is_own=True,
        )

        if not transport.delivers_locally:
            # Delivery to listeners comes back through the subscription.
            try:
                return bool(transport.publish(message))
            except Exception:
                self.log.error(
                    "Error sending message session=%s", descriptor.session_id, exc_info=True
                )
                return False

        attempts = max(1, int(self.policy.max_send_retries))
        for attempt in range(1, attempts + 1):
            try:
                if transport.publish(message):
                    return True
                self.log.warning(
                    "Local delivery not acknowledged attempt=%s/%s", attempt, attempts
                )
            except Exception as e:
                self.log.warning(
                    "Local delivery failed attempt=%s/%s err=%s", attempt, attempts, e
                )
            if attempt < attempts:
                self._sleep(self.policy.backoff_s(attempt))

        self.log.error(
            "Giving up on message after %s attempt(s) session=%s",
            attempts,
            descriptor.session_id,
        )
        return False

    def restore(self) -> bool:
        descriptor = self.store.load_descriptor()
        if descriptor is None:
            return False
        self.log.info("Restoring session=%s", descriptor.session_id)
        return self.establish(descriptor)

    def shutdown(self) -> None:
        """Release the transport but keep the persisted descriptor for resume."""
        with self._lock:
            transport = self._transport
            self._transport = None
            self._descriptor = None
            self._accepting = None
            self._state = ConnectionState.DISCONNECTED
        if transport is not None:
            self._deactivate_quietly(transport)
