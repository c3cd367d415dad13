from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from .constants import TOKEN_VALIDITY_MS

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"


@dataclass(frozen=True)
class RetryPolicy:
    """Timing policy for establishing connections and sending messages.

    timeout_ms <= 0 means establishment waits for the transport indefinitely.
    """

    timeout_ms: int = 10_000
    max_send_retries: int = 1
    backoff_base_ms: int = 1_000

    @property
    def timeout_s(self) -> float | None:
        if self.timeout_ms <= 0:
            return None
        return self.timeout_ms / 1000.0

    def backoff_s(self, attempt: int) -> float:
        return max(0, self.backoff_base_ms) * max(1, int(attempt)) / 1000.0

    @classmethod
    def for_profile(cls, name: str | None) -> RetryPolicy:
        key = (name or "default").strip().lower()
        try:
            return RETRY_PROFILES[key]
        except KeyError:
            raise ValueError(f"unknown retry profile {name!r}") from None


# Resource-constrained devices race establishment and retry local sends.
CONSTRAINED = RetryPolicy(timeout_ms=10_000, max_send_retries=3, backoff_base_ms=1_000)
DEFAULT = RetryPolicy(timeout_ms=10_000, max_send_retries=1, backoff_base_ms=1_000)

RETRY_PROFILES: dict[str, RetryPolicy] = {
    "constrained": CONSTRAINED,
    "mobile": CONSTRAINED,
    "default": DEFAULT,
}


@dataclass(frozen=True)
class ClientRuntimeConfig:
    config_path: str | None = None
    database_path: str | None = None
    identity_path: str | None = None
    configdir: str | None = None
    hub_destination: str | None = None
    dest_name: str = "pairchat.hub"
    display_name: str | None = None
    retry_profile: str = "constrained"
    connect_timeout_ms: int | None = None
    max_send_retries: int | None = None
    backoff_base_ms: int | None = None
    token_validity_ms: int = TOKEN_VALIDITY_MS
    path_timeout_s: float = 15.0
    link_timeout_s: float = 8.0
    ack_timeout_s: float = 5.0
    notifications: bool = True
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = DEFAULT_LOG_FORMAT
    log_datefmt: str | None = None

    def retry_policy(self) -> RetryPolicy:
        policy = RetryPolicy.for_profile(self.retry_profile)
        updates: dict[str, int] = {}
        if self.connect_timeout_ms is not None:
            updates["timeout_ms"] = int(self.connect_timeout_ms)
        if self.max_send_retries is not None:
            updates["max_send_retries"] = max(1, int(self.max_send_retries))
        if self.backoff_base_ms is not None:
            updates["backoff_base_ms"] = max(0, int(self.backoff_base_ms))
        return replace(policy, **updates) if updates else policy


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "pairchat.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "pairchat"
    max_log_entries: int = 1000
    max_sessions: int = 4096
    max_content_bytes: int = 256
    session_idle_prune_s: float = 24 * 3600.0
    prune_interval_s: float = 600.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = DEFAULT_LOG_FORMAT
    log_datefmt: str | None = None


_LOG_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_OPTIONAL_STR_KEYS = (
    "database_path",
    "identity_path",
    "configdir",
    "hub_destination",
    "display_name",
    "log_file",
    "log_datefmt",
)


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg, data: dict[str, Any], *, table: str):
    """Return ``cfg`` updated from parsed TOML.

    Keys from ``[table]`` override top-level keys. ``[logging]`` maps onto the
    ``log_*`` fields. Unknown keys are ignored.
    """
    if not isinstance(data, dict):
        return cfg

    section = data.get(table)
    if isinstance(section, dict):
        data = {**data, **section}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped = {_LOG_KEYS[k]: v for k, v in log_table.items() if k in _LOG_KEYS}
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # This identifies where to reload from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    for key in _OPTIONAL_STR_KEYS:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(cfg, **updates) if updates else cfg


def load_client_config(path: str, cfg: ClientRuntimeConfig | None = None) -> ClientRuntimeConfig:
    base = cfg or ClientRuntimeConfig()
    base = replace(base, config_path=path)
    return apply_config_data(base, load_toml(path), table="client")


def load_hub_config(path: str, cfg: HubRuntimeConfig | None = None) -> HubRuntimeConfig:
    base = cfg or HubRuntimeConfig()
    base = replace(base, config_path=path)
    return apply_config_data(base, load_toml(path), table="hub")
