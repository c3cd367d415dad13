from __future__ import annotations


class PairchatError(Exception):
    """Base class for pairchat errors."""


class StorageError(PairchatError):
    """The record store could not be read or written."""


class TransportError(PairchatError):
    """A transport was used in a state that cannot carry messages."""


class CodecError(PairchatError, ValueError):
    """A wire payload could not be decoded."""
