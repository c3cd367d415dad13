"""Logging setup shared by the chat client and the hub daemon.

Both runtime configs carry the same ``log_*`` fields. The hub is a daemon and
logs to the console at its configured level. The client shares the terminal
with the chat loop, so its console only shows warnings unless a level is
forced on the command line; the log file still gets everything.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import RNS

from .config import DEFAULT_LOG_FORMAT, ClientRuntimeConfig, HubRuntimeConfig

RuntimeConfig = ClientRuntimeConfig | HubRuntimeConfig

# Python level ceilings mapped onto Reticulum's own log scale.
_RNS_LEVELS = (
    (logging.DEBUG, RNS.LOG_DEBUG),
    (logging.INFO, RNS.LOG_INFO),
    (logging.WARNING, RNS.LOG_WARNING),
    (logging.ERROR, RNS.LOG_ERROR),
)


def parse_level(value: Any, default: int) -> int:
    """Accept a level name (any case), a number, or a numeric string."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return default
    named = logging.getLevelNamesMapping().get(text)
    if named is not None:
        return named
    try:
        return int(text)
    except ValueError:
        return default


def rns_loglevel(level: int) -> int:
    for ceiling, rns_level in _RNS_LEVELS:
        if level <= ceiling:
            return rns_level
    return RNS.LOG_CRITICAL


def _optional(value: Any) -> str | None:
    if value is None or not str(value).strip():
        return None
    return str(value)


def _file_handler(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def configure_logging(
    cfg: RuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Replace the root handlers according to ``cfg``.

    ``override_file=""`` disables file logging even when the config names one.
    """
    level = parse_level(override_level or cfg.log_level, logging.INFO)
    rns_level = parse_level(cfg.log_rns_level, logging.WARNING)

    console_level = level
    if isinstance(cfg, ClientRuntimeConfig) and override_level is None:
        console_level = max(level, logging.WARNING)

    formatter = logging.Formatter(
        fmt=str(cfg.log_format).strip() or DEFAULT_LOG_FORMAT,
        datefmt=_optional(cfg.log_datefmt),
    )

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        console = logging.StreamHandler()
        console.setLevel(console_level)
        handlers.append(console)

    log_file = _optional(cfg.log_file) if override_file is None else _optional(override_file)
    if log_file:
        handlers.append(_file_handler(log_file))

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(level)

    logging.getLogger("RNS").setLevel(rns_level)
    RNS.loglevel = rns_loglevel(rns_level)
    logging.captureWarnings(True)
