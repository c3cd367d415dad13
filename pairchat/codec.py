from __future__ import annotations

import cbor2

from .errors import CodecError


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    try:
        return cbor2.loads(b)
    except (cbor2.CBORDecodeError, ValueError, TypeError) as e:
        raise CodecError(f"undecodable payload: {e}") from e
