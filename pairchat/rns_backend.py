from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import RNS

from .codec import decode, encode
from .config import ClientRuntimeConfig
from .constants import (
    B_ENTRY_CONTENT,
    B_ENTRY_SENDER,
    B_ENTRY_SEQ,
    B_ENTRY_TS,
    B_PUB_CONTENT,
    B_PUB_SENDER,
    B_SUB_SINCE,
    K_BODY,
    K_ID,
    K_SESSION,
    K_T,
    T_ACK,
    T_ENTRY,
    T_ERROR,
    T_PUBLISH,
    T_SUBSCRIBE,
    T_UNSUBSCRIBE,
)
from .envelope import make_envelope, validate_envelope
from .errors import TransportError
from .models import Message
from .paths import ensure_private_dir
from .util import expand_path

EntryCallback = Callable[[int, Message], None]

# One Reticulum instance per process.
_reticulum_lock = threading.Lock()
_reticulum: Any = None


def parse_destination(text: str | None) -> bytes | None:
    """Parse a hex destination hash; None if it is not one."""
    if not text:
        return None
    s = str(text).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    s = s.strip("<>")
    try:
        b = bytes.fromhex(s)
    except ValueError:
        return None
    if len(b) != RNS.Reticulum.TRUNCATED_HASHLENGTH // 8:
        return None
    return b


class _Pending:
    __slots__ = ("event", "ok", "body")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.ok = False
        self.body: Any = None


class RnsPubSubBackend:
    """
    Client side of the hub protocol over a single RNS.Link.

    Entries for subscribed sessions are dispatched on the Reticulum packet
    thread in arrival order. PUBLISH and SUBSCRIBE wait for the hub's ACK
    (matched by message id) up to ``ack_timeout_s``.
    """

    def __init__(self, config: ClientRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("pairchat.rns")
        self._lock = threading.RLock()
        self._link: RNS.Link | None = None
        self._link_ready = threading.Event()
        self._dest_hash: bytes | None = None
        self._identity: RNS.Identity | None = None
        self._lost_callbacks: dict[str, Callable[[], None]] = {}
        self._subscriptions: dict[str, EntryCallback] = {}
        self._pending: dict[bytes, _Pending] = {}

    def _resolve(self, endpoint: str = "") -> bytes | None:
        return parse_destination(endpoint) or parse_destination(self.config.hub_destination)

    def is_available(self, endpoint: str = "") -> bool:
        return self._resolve(endpoint) is not None

    def _ensure_reticulum(self) -> None:
        global _reticulum
        with _reticulum_lock:
            if _reticulum is None:
                self.log.info("Starting Reticulum")
                _reticulum = RNS.Reticulum(configdir=self.config.configdir)

        if self._identity is None and self.config.identity_path:
            self._identity = self._load_or_create_identity(self.config.identity_path)

    def _load_or_create_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if os.path.exists(p):
            ident = RNS.Identity.from_file(p)
            if ident is None:
                raise RuntimeError(f"Failed to load identity from {p}")
            return ident
        storage_dir = os.path.dirname(p)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(p)
        try:
            os.chmod(p, 0o600)
        except OSError:
            pass
        self.log.info("Created identity path=%s", p)
        return ident

    def _link_active(self) -> bool:
        link = self._link
        return link is not None and link.status == RNS.Link.ACTIVE

    def connect(self, endpoint: str = "") -> bool:
        dest_hash = self._resolve(endpoint)
        if dest_hash is None:
            self.log.warning("No hub destination configured endpoint=%r", endpoint)
            return False

        with self._lock:
            if self._link_active() and self._dest_hash == dest_hash:
                return True
            if self._link is not None:
                self._teardown()

            self._ensure_reticulum()

            if not RNS.Transport.has_path(dest_hash):
                self.log.info("Requesting path to hub dest=%s", dest_hash.hex())
                RNS.Transport.request_path(dest_hash)
                deadline = time.monotonic() + float(self.config.path_timeout_s)
                while not RNS.Transport.has_path(dest_hash):
                    if time.monotonic() > deadline:
                        self.log.warning("Path request timed out dest=%s", dest_hash.hex())
                        return False
                    time.sleep(0.1)

            hub_identity = RNS.Identity.recall(dest_hash)
            if hub_identity is None:
                self.log.warning("Hub identity unknown dest=%s", dest_hash.hex())
                return False

            parts = [p for p in str(self.config.dest_name).split(".") if p]
            if not parts:
                raise ValueError("dest_name must not be empty")
            app_name, aspects = parts[0], parts[1:]

            destination = RNS.Destination(
                hub_identity,
                RNS.Destination.OUT,
                RNS.Destination.SINGLE,
                app_name,
                *aspects,
            )

            self._link_ready.clear()
            link = RNS.Link(
                destination,
                established_callback=self._on_established,
                closed_callback=self._on_closed,
            )
            self._link = link
            self._dest_hash = dest_hash

        if not self._link_ready.wait(float(self.config.link_timeout_s)):
            self.log.warning("Link establishment timed out dest=%s", dest_hash.hex())
            with self._lock:
                self._teardown()
            return False

        if self._identity is not None:
            link.identify(self._identity)

        self.log.info("Link to hub established dest=%s", dest_hash.hex())
        return True

    def _on_established(self, link: RNS.Link) -> None:
        link.set_packet_callback(lambda data, pkt: self._on_packet(data))
        self._link_ready.set()

    def _on_closed(self, link: RNS.Link) -> None:
        with self._lock:
            if link is not self._link:
                return
            self._link = None
            self._dest_hash = None
            pending = list(self._pending.values())
            self._pending.clear()
            lost = list(self._lost_callbacks.values())
            self._lost_callbacks.clear()
            self._subscriptions.clear()
        for p in pending:
            p.event.set()
        self.log.info("Link to hub closed subscriptions=%s", len(lost))
        for cb in lost:
            try:
                cb()
            except Exception:
                self.log.exception("Link loss callback failed")

    def _on_packet(self, data: bytes) -> None:
        try:
            env = decode(data)
            validate_envelope(env)
        except (TypeError, ValueError) as e:
            self.log.debug("Bad packet from hub bytes=%s err=%s", len(data), e)
            return

        t = env[K_T]
        if t == T_ENTRY:
            self._dispatch_entry(env)
            return

        if t in (T_ACK, T_ERROR):
            with self._lock:
                pending = self._pending.pop(bytes(env[K_ID]), None)
            if t == T_ERROR:
                self.log.warning("Hub error: %s", env.get(K_BODY))
            if pending is not None:
                pending.ok = t == T_ACK
                pending.body = env.get(K_BODY)
                pending.event.set()

    def _dispatch_entry(self, env: dict) -> None:
        session = env.get(K_SESSION)
        body = env.get(K_BODY)
        if not isinstance(session, str) or not isinstance(body, dict):
            return
        with self._lock:
            callback = self._subscriptions.get(session)
        if callback is None:
            return

        seq = body.get(B_ENTRY_SEQ)
        sender = body.get(B_ENTRY_SENDER)
        content = body.get(B_ENTRY_CONTENT)
        ts = body.get(B_ENTRY_TS)
        if not isinstance(seq, int) or not isinstance(sender, str) or not isinstance(content, str):
            self.log.debug("Malformed entry session=%s", session)
            return
        if not isinstance(ts, int):
            ts = int(time.time() * 1000)

        callback(
            seq,
            Message(session_id=session, sender=sender, content=content, timestamp_ms=ts, seq=seq),
        )

    def _request(self, env: dict) -> _Pending | None:
        """Send ``env`` and wait for its ACK or ERROR."""
        payload = encode(env)
        with self._lock:
            link = self._link
            if link is None or link.status != RNS.Link.ACTIVE:
                self.log.warning("No active link to hub")
                return None
            mdu = getattr(link, "MDU", None)
            if mdu is not None and len(payload) > mdu:
                self.log.warning("Payload would not fit MTU bytes=%s mdu=%s", len(payload), mdu)
                return None
            pending = _Pending()
            self._pending[bytes(env[K_ID])] = pending

        try:
            RNS.Packet(link, payload).send()
        except OSError as e:
            self.log.warning("Send failed bytes=%s err=%s", len(payload), e)
            with self._lock:
                self._pending.pop(bytes(env[K_ID]), None)
            return None

        if not pending.event.wait(float(self.config.ack_timeout_s)):
            with self._lock:
                self._pending.pop(bytes(env[K_ID]), None)
            self.log.warning("No acknowledgment from hub t=%s", env[K_T])
            return None
        return pending

    def subscribe(
        self,
        session_id: str,
        callback: EntryCallback,
        since: int = 0,
        on_lost: Callable[[], None] | None = None,
    ) -> Callable[[], None]:
        with self._lock:
            self._subscriptions[session_id] = callback
            if on_lost is not None:
                self._lost_callbacks[session_id] = on_lost

        env = make_envelope(T_SUBSCRIBE, session=session_id, body={B_SUB_SINCE: int(since)})
        result = self._request(env)
        if result is None or not result.ok:
            with self._lock:
                if self._subscriptions.get(session_id) is callback:
                    self._subscriptions.pop(session_id, None)
                    self._lost_callbacks.pop(session_id, None)
            reason = "no acknowledgment" if result is None else result.body
            raise TransportError(f"subscription refused session={session_id}: {reason}")

        def unsubscribe() -> None:
            with self._lock:
                if self._subscriptions.get(session_id) is not callback:
                    return
                self._subscriptions.pop(session_id, None)
                self._lost_callbacks.pop(session_id, None)
            if self._link_active():
                self._request(make_envelope(T_UNSUBSCRIBE, session=session_id))

        return unsubscribe

    def append(self, session_id: str, sender: str, content: str) -> bool:
        env = make_envelope(
            T_PUBLISH,
            session=session_id,
            body={B_PUB_SENDER: sender, B_PUB_CONTENT: content},
        )
        result = self._request(env)
        return result is not None and result.ok

    def _teardown(self) -> None:
        link = self._link
        self._link = None
        self._dest_hash = None
        if link is not None:
            try:
                link.teardown()
            except Exception:
                self.log.debug("Link teardown failed", exc_info=True)

    def close(self) -> None:
        with self._lock:
            self._subscriptions.clear()
            self._lost_callbacks.clear()
            pending = list(self._pending.values())
            self._pending.clear()
            self._teardown()
        for p in pending:
            p.event.set()
