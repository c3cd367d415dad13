from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .config import ClientRuntimeConfig, RetryPolicy
from .connection import ConnectionManager
from .envelope import now_ms
from .listeners import ListenerRegistry
from .models import ChatSession, ConnectionDescriptor, Message
from .notify import (
    LoggingNotificationSink,
    NotificationSink,
    connection_text,
    incoming_message_text,
    safe_show,
)
from .storage import SqliteStore
from .token import create_invitation, decode_token
from .transport import PubSubBackend, Transport, select_transport
from .util import normalize_name


class ChatApp:
    """
    Composition root: wires the store, listener registry, transports and
    connection manager for one process.

    Lifecycle is ``ChatApp(...)`` -> ``initialize()`` -> use -> ``shutdown()``.
    Every collaborator can be injected, which is what the tests do.
    """

    def __init__(
        self,
        config: ClientRuntimeConfig,
        *,
        store: SqliteStore | None = None,
        backend: PubSubBackend | None = None,
        sink: NotificationSink | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("pairchat.app")
        self.store = store or SqliteStore(config.database_path or ":memory:")
        self.backend = backend
        self.sink = sink if sink is not None else (
            LoggingNotificationSink() if config.notifications else None
        )
        self.listeners = ListenerRegistry()
        self.manager = ConnectionManager(
            self.store,
            self.listeners,
            self._make_transport,
            policy or config.retry_policy(),
            sleep=sleep,
            clock=clock,
        )
        self._initialized = False

    def _make_transport(self, descriptor: ConnectionDescriptor) -> Transport:
        return select_transport(self.backend, descriptor.transport_endpoint)

    def initialize(self, *, restore: bool = True) -> bool:
        """Open the store, wire listeners and optionally resume the last session.

        Returns True when a previous session was resumed.
        """
        self.store.initialize()
        if not self._initialized:
            self.listeners.add_message_listener(self._record_message)
            self.listeners.add_message_listener(self._notify_message)
            self.listeners.add_connection_listener(self._notify_connection)
            self._initialized = True
        if restore:
            return self.manager.restore()
        return False

    def _endpoint(self) -> str:
        return self.config.hub_destination or ""

    def _require_name(self, name: str | None) -> str:
        clean = normalize_name(name or self.config.display_name)
        if clean is None:
            raise ValueError(f"invalid display name {name!r}")
        return clean

    def invite(self, name: str | None = None) -> str:
        """Start a new session as the inviter and return the token text."""
        user = self._require_name(name)
        text, token = create_invitation(user, endpoint=self._endpoint())
        self.store.save_chat_session(
            ChatSession(
                session_id=token.session_id,
                participant_name="",
                created_at_ms=token.issued_at_ms,
                last_message_at_ms=token.issued_at_ms,
            )
        )
        self.manager.establish(
            ConnectionDescriptor(
                session_id=token.session_id,
                local_user_name=user,
                transport_endpoint=token.transport_endpoint,
            )
        )
        return text

    def join(self, token_text: str, name: str | None = None) -> bool:
        """Join the session described by ``token_text``.

        False when the token is rejected or the connection cannot be made.
        """
        user = self._require_name(name)
        token = decode_token(token_text, validity_ms=self.config.token_validity_ms)
        if token is None:
            return False

        now = now_ms()
        existing = self.store.get_chat_session(token.session_id)
        self.store.save_chat_session(
            ChatSession(
                session_id=token.session_id,
                participant_name=token.inviter_name,
                created_at_ms=existing.created_at_ms if existing else now,
                last_message_at_ms=existing.last_message_at_ms if existing else now,
            )
        )
        return self.manager.establish(
            ConnectionDescriptor(
                session_id=token.session_id,
                local_user_name=user,
                transport_endpoint=token.transport_endpoint or self._endpoint(),
            )
        )

    def send(self, content: str) -> bool:
        return self.manager.send(content)

    def disconnect(self) -> None:
        self.manager.disconnect()

    def history(self, session_id: str | None = None) -> list[Message]:
        sid = session_id or self.manager.session_id
        if not sid:
            return []
        return self.store.get_messages(sid)

    def sessions(self) -> list[ChatSession]:
        return self.store.get_chat_sessions()

    def forget(self, session_id: str) -> None:
        if self.manager.session_id == session_id:
            self.manager.disconnect()
        self.store.delete_chat_session(session_id)

    def _record_message(self, message: Message) -> None:
        if not self.store.save_message(message):
            return
        session = self.store.get_chat_session(message.session_id)
        if session is None:
            self.store.save_chat_session(
                ChatSession(
                    session_id=message.session_id,
                    participant_name="" if message.is_own else message.sender,
                    created_at_ms=message.timestamp_ms,
                    last_message_at_ms=message.timestamp_ms,
                )
            )
            return
        if not message.is_own and not session.participant_name:
            self.store.save_chat_session(
                ChatSession(
                    session_id=session.session_id,
                    participant_name=message.sender,
                    created_at_ms=session.created_at_ms,
                    last_message_at_ms=max(session.last_message_at_ms, message.timestamp_ms),
                )
            )
            return
        if message.timestamp_ms > session.last_message_at_ms:
            self.store.update_session_last_message(message.session_id, message.timestamp_ms)

    def _notify_message(self, message: Message) -> None:
        if message.is_own:
            return
        title, body = incoming_message_text(message.sender, message.content)
        safe_show(self.sink, title, body)

    def _notify_connection(self, connected: bool) -> None:
        partner = None
        sid = self.manager.session_id
        if connected and sid:
            session = self.store.get_chat_session(sid)
            partner = session.participant_name if session is not None else None
        text = connection_text(connected, partner)
        if text is not None:
            safe_show(self.sink, *text)

    def shutdown(self) -> None:
        self.manager.shutdown()
        self.listeners.clear()
        self._initialized = False
        if self.backend is not None:
            try:
                self.backend.close()
            except Exception:
                self.log.warning("Backend close failed", exc_info=True)
        self.store.close()
