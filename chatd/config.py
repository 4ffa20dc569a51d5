from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "chatd.hub"
    announce_on_start: bool = True
    hub_name: str = "chatd"
    server_nick: str = "Server"
    default_nick: str = "Anonymous"
    nick_max_chars: int = 32
    max_room_name_len: int = 64
    max_body_chars: int = 4096
    store_url: str | None = None
    store_timeout_s: float = 5.0
    store_read_attempts: int = 3
    store_retry_delay_s: float = 0.1
    store_claim_ttl_s: float = 30.0
    kdf_digest: str = "sha256"
    kdf_iterations: int = 100_000
    kdf_key_len: int = 64
    kdf_salt_len: int = 32
    sequencer_max_attempts: int = 3
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_redis_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    log_datefmt: str | None = None


# TOML tables whose keys are prefixed before being matched to config fields.
_PREFIXED_TABLES = {
    "store": "store_",
    "identity": "kdf_",
    "logging": "log_",
}


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg: HubRuntimeConfig, data: dict[str, Any]) -> HubRuntimeConfig:
    """Overlay parsed TOML onto ``cfg``.

    ``[hub]`` keys map directly onto fields; ``[store]``, ``[identity]`` and
    ``[logging]`` keys are prefixed (``url`` -> ``store_url``, ``iterations``
    -> ``kdf_iterations``, ``level`` -> ``log_level``). Unknown keys are
    ignored.
    """
    if not isinstance(data, dict):
        return cfg

    flat: dict[str, Any] = {k: v for k, v in data.items() if not isinstance(v, dict)}

    hub = data.get("hub")
    if isinstance(hub, dict):
        flat.update(hub)

    for table, prefix in _PREFIXED_TABLES.items():
        section = data.get(table)
        if isinstance(section, dict):
            for k, v in section.items():
                flat[k if k.startswith(prefix) else prefix + k] = v

    allowed = set(asdict(cfg).keys())
    # This identifies where to reload from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in flat.items() if k in allowed}

    for key in ("configdir", "store_url", "log_file", "log_datefmt"):
        if key in updates and updates[key] == "":
            updates[key] = None
    return replace(cfg, **updates) if updates else cfg
