from __future__ import annotations

import os
from pathlib import Path


def default_pairchat_dir() -> Path:
    override = os.environ.get("PAIRCHAT_HOME")
    if override:
        return Path(override)
    return Path.home() / ".pairchat"


def default_config_path() -> Path:
    return default_pairchat_dir() / "pairchat.toml"


def default_hub_config_path() -> Path:
    return default_pairchat_dir() / "hub.toml"


def default_identity_path() -> Path:
    return default_pairchat_dir() / "identity"


def default_hub_identity_path() -> Path:
    return default_pairchat_dir() / "hub_identity"


def default_database_path() -> Path:
    return default_pairchat_dir() / "pairchat.db"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
