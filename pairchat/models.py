from __future__ import annotations

import enum
from dataclasses import dataclass


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class ConnectionDescriptor:
    """The connection this device currently believes it has."""

    session_id: str
    local_user_name: str
    transport_endpoint: str = ""


@dataclass(frozen=True)
class Message:
    session_id: str
    sender: str
    content: str
    timestamp_ms: int
    is_own: bool = False
    # Position in the hub log; None when the message never went through one.
    seq: int | None = None


@dataclass(frozen=True)
class ChatSession:
    session_id: str
    participant_name: str
    created_at_ms: int
    last_message_at_ms: int
