from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any

import RNS

from . import __version__
from .codec import decode, encode
from .config import HubRuntimeConfig
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
    T_PING,
    T_PONG,
    T_PUBLISH,
    T_SUBSCRIBE,
    T_UNSUBSCRIBE,
)
from .envelope import make_envelope, now_ms, validate_envelope
from .logs import LogEntry, SessionLogStore
from .util import expand_path, normalize_name


class HubService:
    """
    Hosts per-session ordered logs over Reticulum links.

    PUBLISH appends to the session log and fans the resulting ENTRY out to
    every subscriber of that session (the publisher included), then ACKs the
    publisher. SUBSCRIBE registers the link and optionally replays entries
    after a given sequence number.
    """

    def __init__(self, config: HubRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("pairchat.hub")

        # Log and subscriber state is touched from Reticulum callbacks and the
        # prune thread. Guard it with a single re-entrant lock.
        self._state_lock = threading.RLock()
        self._shutdown = threading.Event()

        self.logs = SessionLogStore(
            max_entries=config.max_log_entries, max_sessions=config.max_sessions
        )
        self.links: set[RNS.Link] = set()

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._announce_thread: threading.Thread | None = None
        self._prune_thread: threading.Thread | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "published": 0,
            "entries_out": 0,
            "subscribes": 0,
            "errors_sent": 0,
            "announces": 0,
        }

    def _fmt_link_id(self, link: Any) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        return "-"

    def _inc(self, key: str, delta: int = 1) -> None:
        with self._state_lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def stats(self) -> dict[str, Any]:
        with self._state_lock:
            return {**self._counters, **self.logs.get_stats(), "links": len(self.links)}

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop, name="pairchat-announce", daemon=True
            )
            self._announce_thread.start()

        if self.config.prune_interval_s > 0 and self.config.session_idle_prune_s > 0:
            self._prune_thread = threading.Thread(
                target=self._prune_loop, name="pairchat-prune", daemon=True
            )
            self._prune_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex(),
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "pairchat", "v": __version__, "hub": self.config.hub_name})
            )
            self._inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.announce_period_s)):
            self._announce_once()

    def _prune_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.prune_interval_s)):
            with self._state_lock:
                pruned = self.logs.prune_idle(float(self.config.session_idle_prune_s))
            if pruned:
                self.log.info("Pruned %d idle session log(s)", len(pruned))

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        self._shutdown.set()

        with self._state_lock:
            links = list(self.links)
            self.links.clear()
            self.logs.clear()

        for link in links:
            try:
                link.teardown()
            except Exception:
                self.log.debug("Teardown failed link_id=%s", self._fmt_link_id(link), exc_info=True)

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _on_link(self, link: RNS.Link) -> None:
        with self._state_lock:
            self.links.add(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))

        self.log.info("Link established link_id=%s", self._fmt_link_id(link))

    def _on_close(self, link: RNS.Link) -> None:
        with self._state_lock:
            self.links.discard(link)
            sessions = self.logs.drop_handle(link)

        self.log.info(
            "Link closed sessions=%s link_id=%s", len(sessions), self._fmt_link_id(link)
        )

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Keep state mutations under the lock, but send outside it.
        outgoing: list[tuple[Any, bytes]] = []
        with self._state_lock:
            self.handle_packet(link, data, outgoing)

        for out_link, payload in outgoing:
            self._send_payload(out_link, payload)

    def _send_payload(self, link: Any, payload: bytes) -> None:
        self._inc("bytes_out", len(payload))
        try:
            RNS.Packet(link, payload).send()
        except OSError as e:
            # Common failure mode on low-MTU links: packet too large.
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self._fmt_link_id(link),
                len(payload),
                e,
            )
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self._fmt_link_id(link),
                len(payload),
                exc_info=True,
            )

    def _emit(self, outgoing: list[tuple[Any, bytes]], link: Any, env: dict) -> None:
        outgoing.append((link, encode(env)))

    def _emit_error(
        self,
        outgoing: list[tuple[Any, bytes]],
        link: Any,
        text: str,
        *,
        session: str | None = None,
        mid: bytes | None = None,
    ) -> None:
        self._counters["errors_sent"] += 1
        self._emit(outgoing, link, make_envelope(T_ERROR, session=session, body=text, mid=mid))

    def handle_packet(self, link: Any, data: bytes, outgoing: list[tuple[Any, bytes]]) -> None:
        """Route one inbound packet. Must be called with the state lock held."""
        self._counters["pkts_in"] += 1
        self._counters["bytes_in"] += len(data)

        try:
            env = decode(data)
            validate_envelope(env)
        except (TypeError, ValueError) as e:
            self._counters["pkts_bad"] += 1
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                self._fmt_link_id(link),
                len(data),
                e,
            )
            self._emit_error(outgoing, link, f"bad message: {e}")
            return

        t = env[K_T]
        session = env.get(K_SESSION)
        mid = env[K_ID]

        if t == T_PING:
            self._emit(outgoing, link, make_envelope(T_PONG, body=env.get(K_BODY), mid=mid))
            return
        if t == T_PONG:
            return

        if session is None:
            self._emit_error(outgoing, link, "session required", mid=mid)
            return

        if t == T_PUBLISH:
            self._handle_publish(link, session, mid, env.get(K_BODY), outgoing)
        elif t == T_SUBSCRIBE:
            self._handle_subscribe(link, session, mid, env.get(K_BODY), outgoing)
        elif t == T_UNSUBSCRIBE:
            self.logs.unsubscribe(session, link)
            self._emit(outgoing, link, make_envelope(T_ACK, session=session, mid=mid))
        else:
            self._emit_error(outgoing, link, f"unsupported type {t}", session=session, mid=mid)

    def _handle_subscribe(
        self,
        link: Any,
        session: str,
        mid: bytes,
        body: Any,
        outgoing: list[tuple[Any, bytes]],
    ) -> None:
        try:
            added = self.logs.subscribe(session, link)
        except OverflowError as e:
            self._emit_error(outgoing, link, str(e), session=session, mid=mid)
            return

        if added:
            self._counters["subscribes"] += 1
            self.log.info(
                "Subscribed session=%s link_id=%s", session, self._fmt_link_id(link)
            )

        since = body.get(B_SUB_SINCE) if isinstance(body, dict) else None
        log = self.logs.get(session)
        head = (log.next_seq - 1) if log is not None else 0

        if isinstance(since, int) and not isinstance(since, bool) and log is not None:
            for entry in log.entries_since(since):
                self._emit(outgoing, link, self._entry_envelope(session, entry))

        self._emit(outgoing, link, make_envelope(T_ACK, session=session, body=head, mid=mid))

    def _handle_publish(
        self,
        link: Any,
        session: str,
        mid: bytes,
        body: Any,
        outgoing: list[tuple[Any, bytes]],
    ) -> None:
        if not isinstance(body, dict):
            self._emit_error(outgoing, link, "publish body must be a map", session=session, mid=mid)
            return

        sender = normalize_name(body.get(B_PUB_SENDER))
        content = body.get(B_PUB_CONTENT)
        if sender is None:
            self._emit_error(outgoing, link, "invalid sender", session=session, mid=mid)
            return
        if not isinstance(content, str) or not content:
            self._emit_error(outgoing, link, "invalid content", session=session, mid=mid)
            return
        if len(content.encode("utf-8")) > int(self.config.max_content_bytes):
            self._emit_error(outgoing, link, "message too large", session=session, mid=mid)
            return

        try:
            entry = self.logs.append(session, sender, content, now_ms())
        except OverflowError as e:
            self._emit_error(outgoing, link, str(e), session=session, mid=mid)
            return

        self._counters["published"] += 1
        entry_env = self._entry_envelope(session, entry)
        for sub in self.logs.subscribers(session):
            self._emit(outgoing, sub, entry_env)
            self._counters["entries_out"] += 1

        self._emit(outgoing, link, make_envelope(T_ACK, session=session, body=entry.seq, mid=mid))

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Appended session=%s seq=%s sender=%r chars=%s",
                session,
                entry.seq,
                sender,
                len(content),
            )

    def _entry_envelope(self, session: str, entry: LogEntry) -> dict:
        return make_envelope(
            T_ENTRY,
            session=session,
            body={
                B_ENTRY_SEQ: entry.seq,
                B_ENTRY_SENDER: entry.sender,
                B_ENTRY_CONTENT: entry.content,
                B_ENTRY_TS: entry.ts,
            },
        )
