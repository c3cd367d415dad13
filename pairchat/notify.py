from __future__ import annotations

import logging
from typing import Protocol

from .util import truncate

PREVIEW_CHARS = 50


class NotificationSink(Protocol):
    def show(self, title: str, body: str) -> None: ...


class LoggingNotificationSink:
    """Presents notifications as log records."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.log = logger or logging.getLogger("pairchat.notify")

    def show(self, title: str, body: str) -> None:
        self.log.info("%s: %s", title, body)


def incoming_message_text(sender: str, content: str) -> tuple[str, str]:
    return f"New message from {sender}", truncate(content, PREVIEW_CHARS)


def connection_text(connected: bool, partner: str | None = None) -> tuple[str, str] | None:
    if connected:
        if not partner:
            return None
        return "Connected to Chat", f"You are now connected with {partner}"
    return "Chat Disconnected", "You have been disconnected from the chat session"


def safe_show(sink: NotificationSink | None, title: str, body: str) -> None:
    if sink is None:
        return
    try:
        sink.show(title, body)
    except Exception:
        logging.getLogger("pairchat.notify").warning(
            "Notification sink failed title=%r", title, exc_info=True
        )
