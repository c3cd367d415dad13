from __future__ import annotations

import argparse
import os
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import TextIO

import RNS

from .app import ChatApp
from .config import (
    ClientRuntimeConfig,
    HubRuntimeConfig,
    load_client_config,
    load_hub_config,
)
from .errors import PairchatError
from .logging_config import configure_logging
from .models import Message
from .paths import (
    default_config_path,
    default_database_path,
    default_hub_config_path,
    default_hub_identity_path,
    default_identity_path,
    ensure_private_dir,
)
from .token import decode_token


def _write_default_hub_config(config_path: str, identity_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# pairchat hub configuration (TOML)
#
# This file was created on first run.
# Edit it, then start the hub again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where the hub stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Destination name to host the hub on. Clients must use the same name.
dest_name = "pairchat.hub"

# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

hub_name = "pairchat"

# Limits.
# max_content_bytes must leave room for the envelope inside one link packet.
max_log_entries = 1000
max_sessions = 4096
max_content_bytes = 256

# Session logs without subscribers are dropped after this many seconds.
session_idle_prune_s = 86400.0
prune_interval_s = 600.0

[logging]
level = "INFO"
rns_level = "WARNING"
console = true
file = ""
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_hub_first_run_files(config_path: str, identity_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_hub_config(config_path, identity_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pairchat", description="Two-party chat sessions from invitation tokens")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a client TOML config file (optional)",
    )
    p.add_argument("--database", default=None, help="Path to the SQLite history database")
    p.add_argument("--hub", default=None, help="Hub destination hash (hex); empty uses local delivery")
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    sub = p.add_subparsers(dest="command", required=True)

    invite = sub.add_parser("invite", help="Start a session and print its invitation token")
    invite.add_argument("--name", default=None, help="Your display name")

    join = sub.add_parser("join", help="Join a session from an invitation token")
    join.add_argument("token", help="Token text, or '-' to read it from stdin")
    join.add_argument("--name", default=None, help="Your display name")

    sub.add_parser("resume", help="Resume the last active session")
    sub.add_parser("sessions", help="List stored sessions")

    history = sub.add_parser("history", help="Print the stored history of a session")
    history.add_argument("session_id")

    forget = sub.add_parser("forget", help="Delete a session and its history")
    forget.add_argument("session_id")

    hub = sub.add_parser("hub", help="Run the pub/sub hub daemon")
    hub.add_argument(
        "--hub-config",
        default=str(default_hub_config_path()),
        help="Path to the hub TOML config file (created on first run)",
    )
    hub.add_argument(
        "--identity",
        default=str(default_hub_identity_path()),
        help="Path to the hub identity file (created on first run)",
    )
    hub.add_argument("--configdir", default=None, help="Reticulum config directory")
    hub.add_argument("--dest-name", default=None, help="Destination app name (default: pairchat.hub)")
    hub.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    hub.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )

    return p


def _client_config(args: argparse.Namespace) -> ClientRuntimeConfig:
    cfg = ClientRuntimeConfig(
        database_path=str(default_database_path()),
        identity_path=str(default_identity_path()),
    )
    if args.config and os.path.exists(args.config):
        cfg = load_client_config(args.config, cfg)
    if args.database is not None:
        cfg = replace(cfg, database_path=str(args.database))
    if args.hub is not None:
        cfg = replace(cfg, hub_destination=str(args.hub) or None)
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    return cfg


def _build_app(cfg: ClientRuntimeConfig) -> ChatApp:
    backend = None
    if cfg.hub_destination:
        from .rns_backend import RnsPubSubBackend

        backend = RnsPubSubBackend(cfg)
    return ChatApp(cfg, backend=backend)


def _format_message(message: Message) -> str:
    stamp = time.strftime("%H:%M", time.localtime(message.timestamp_ms / 1000))
    marker = "*" if message.is_own else " "
    return f"[{stamp}]{marker}{message.sender}: {message.content}"


def chat_loop(app: ChatApp, stdin: TextIO = sys.stdin, out: TextIO = sys.stdout) -> None:
    """Send each input line; print every observed message.

    ``/quit`` leaves and keeps the session for ``resume``; ``/disconnect``
    leaves and forgets it.
    """

    def show(message: Message) -> None:
        print(_format_message(message), file=out, flush=True)

    app.listeners.add_message_listener(show)
    try:
        for line in stdin:
            text = line.rstrip("\r\n")
            if not text.strip():
                continue
            if text == "/quit":
                break
            if text == "/disconnect":
                app.disconnect()
                break
            if not app.manager.is_connected():
                print("! not connected", file=out, flush=True)
                continue
            if not app.send(text):
                # Keep the draft visible so it can be re-sent.
                print(f"! not sent: {text}", file=out, flush=True)
    finally:
        app.listeners.remove_message_listener(show)


def _run_hub(args: argparse.Namespace) -> None:
    from .hub import HubService

    config_path = str(args.hub_config)
    identity_path = str(args.identity)

    if _ensure_hub_first_run_files(config_path, identity_path):
        print(
            "Created default hub files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run pairchat hub.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = HubRuntimeConfig(configdir=args.configdir, identity_path=identity_path)
    cfg = load_hub_config(config_path, cfg)

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


def _read_token(arg: str) -> str:
    if arg == "-":
        return sys.stdin.readline().strip()
    return arg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    if args.command == "hub":
        _run_hub(args)
        return

    cfg = _client_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    app = _build_app(cfg)
    try:
        if args.command == "sessions":
            app.initialize(restore=False)
            for s in app.sessions():
                stamp = time.strftime("%Y-%m-%d %H:%M", time.localtime(s.last_message_at_ms / 1000))
                print(f"{s.session_id}  {s.participant_name or '-'}  {stamp}")
            return

        if args.command == "history":
            app.initialize(restore=False)
            for m in app.history(args.session_id):
                print(_format_message(m))
            return

        if args.command == "forget":
            app.initialize(restore=False)
            app.forget(args.session_id)
            return

        if args.command == "resume":
            if not app.initialize(restore=True):
                print("No session to resume, or it could not be reached.", file=sys.stderr)
                raise SystemExit(1)
        elif args.command == "invite":
            app.initialize(restore=False)
            token = app.invite(args.name)
            print(token, flush=True)
            if not app.manager.is_connected():
                print("Could not open the session; try `pairchat resume`.", file=sys.stderr)
                raise SystemExit(1)
        elif args.command == "join":
            app.initialize(restore=False)
            token_text = _read_token(args.token)
            if decode_token(token_text, validity_ms=cfg.token_validity_ms) is None:
                print(
                    "Could not join: the token is invalid or expired. Ask for a fresh one.",
                    file=sys.stderr,
                )
                raise SystemExit(1)
            if not app.join(token_text, args.name):
                print(
                    "Could not reach the session. Retry with `pairchat resume`.",
                    file=sys.stderr,
                )
                raise SystemExit(1)

        chat_loop(app)
    except (PairchatError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        raise SystemExit(2) from e
    finally:
        app.shutdown()


if __name__ == "__main__":
    main()
