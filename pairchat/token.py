"""Invitation tokens.

A token is the self-describing payload that bootstraps a session for the
joining party. It is plain UTF-8 JSON (usually carried inside a QR code) with
the fields ``sessionId``, ``userName``, ``serverUrl`` and ``timestamp``.

Freshness is the token's only guarantee: there is no signature, so anything
older than the validity window is rejected.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass

from .constants import (
    SESSION_ID_BYTES,
    TOKEN_SERVER_URL,
    TOKEN_SESSION_ID,
    TOKEN_TIMESTAMP,
    TOKEN_USER_NAME,
    TOKEN_VALIDITY_MS,
)
from .envelope import now_ms as _now_ms

log = logging.getLogger("pairchat.token")


@dataclass(frozen=True)
class InvitationToken:
    session_id: str
    inviter_name: str
    transport_endpoint: str
    issued_at_ms: int


def generate_session_id() -> str:
    return os.urandom(SESSION_ID_BYTES).hex()


def encode_token(
    inviter_name: str,
    session_id: str,
    *,
    endpoint: str = "",
    now_ms: int | None = None,
) -> str:
    issued = _now_ms() if now_ms is None else int(now_ms)
    payload = {
        TOKEN_SESSION_ID: session_id,
        TOKEN_USER_NAME: inviter_name,
        TOKEN_SERVER_URL: endpoint,
        TOKEN_TIMESTAMP: issued,
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def create_invitation(
    inviter_name: str, *, endpoint: str = ""
) -> tuple[str, InvitationToken]:
    """Generate a fresh session id and return ``(token_text, token)``."""
    session_id = generate_session_id()
    issued = _now_ms()
    text = encode_token(inviter_name, session_id, endpoint=endpoint, now_ms=issued)
    return text, InvitationToken(
        session_id=session_id,
        inviter_name=inviter_name,
        transport_endpoint=endpoint,
        issued_at_ms=issued,
    )


def _reject(reason: str) -> None:
    log.info("Rejected invitation token: %s", reason)
    return None


def decode_token(
    text,
    *,
    now_ms: int | None = None,
    validity_ms: int = TOKEN_VALIDITY_MS,
) -> InvitationToken | None:
    """Parse and validate a token.

    Returns None for anything that is not a fresh, well-formed token. Invalid
    input is an expected result here, so nothing is raised.
    """
    if isinstance(text, (bytes, bytearray)):
        try:
            text = bytes(text).decode("utf-8")
        except UnicodeDecodeError:
            return _reject("not utf-8")
    if not isinstance(text, str):
        return _reject("not a string")

    try:
        data = json.loads(text.strip())
    except ValueError as e:
        log.debug("Token parse error: %s", e)
        return _reject("unparsable payload")

    if not isinstance(data, dict):
        return _reject("payload is not an object")

    session_id = data.get(TOKEN_SESSION_ID)
    if not isinstance(session_id, str) or not session_id:
        return _reject("missing sessionId")

    inviter = data.get(TOKEN_USER_NAME)
    if not isinstance(inviter, str) or not inviter:
        return _reject("missing userName")

    issued = data.get(TOKEN_TIMESTAMP)
    # bool is an int subclass; a JSON true is not a timestamp.
    if not isinstance(issued, int) or isinstance(issued, bool):
        return _reject("missing timestamp")

    endpoint = data.get(TOKEN_SERVER_URL)
    if not isinstance(endpoint, str):
        endpoint = ""

    now = _now_ms() if now_ms is None else int(now_ms)
    age = now - issued
    if age > int(validity_ms):
        return _reject(f"expired age_ms={age}")

    return InvitationToken(
        session_id=session_id,
        inviter_name=inviter,
        transport_endpoint=endpoint,
        issued_at_ms=issued,
    )
