from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

import RNS

from .config import HubRuntimeConfig, apply_config_data, load_toml
from .logging_config import configure_logging
from .paths import default_config_path, default_identity_path, ensure_private_dir
from .service import HubService

_DEFAULT_CONFIG = """\
# chatd hub configuration
#
# Written on first start. Review it, then run chatd again.

[hub]
# Reticulum config directory; empty lets Reticulum pick (usually ~/.reticulum).
configdir = ""
# Reticulum identity of the hub itself.
identity_path = {identity_path!r}
dest_name = "chatd.hub"
announce_on_start = true
hub_name = "chatd"

# Sender name on system notices, and the name clients get until they pick one.
server_nick = "Server"
default_nick = "Anonymous"

nick_max_chars = 32
max_room_name_len = 64
max_body_chars = 4096

# How many fresh message ids a send may try when its reserved slot is taken.
sequencer_max_attempts = 3

[store]
# redis:// URL holding history, topics and registered nicknames.
# Empty keeps them in process memory until the hub stops.
url = ""
timeout_s = 5.0
# Reads are tried this many times, retry_delay_s apart. Writes are tried once.
read_attempts = 3
retry_delay_s = 0.1
# A nickname registration that dies half way frees the name after this long.
claim_ttl_s = 30.0

[identity]
# PBKDF2 settings for registered nicknames.
digest = "sha256"
iterations = 100000
key_len = 64
salt_len = 32

[logging]
level = "INFO"
rns_level = "WARNING"
redis_level = "WARNING"
console = true
# Empty disables the log file.
file = ""
format = "%(asctime)s %(levelname)s %(name)s: %(message)s"
datefmt = ""
"""


def _write_default_config(config_path: str, identity_path: str) -> None:
    for directory in (os.path.dirname(config_path), os.path.dirname(identity_path)):
        if directory:
            ensure_private_dir(Path(directory))
    Path(config_path).write_text(
        _DEFAULT_CONFIG.format(identity_path=identity_path), encoding="utf-8"
    )


def _ensure_first_run_files(config_path: str, identity_path: str) -> list[str]:
    """Create whichever of the config and identity files is missing.

    Returns the paths that were created.
    """
    created: list[str] = []

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path)
        created.append(config_path)

    if not os.path.exists(identity_path):
        parent = os.path.dirname(identity_path)
        if parent:
            ensure_private_dir(Path(parent))
        RNS.Identity().to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created.append(identity_path)

    return created


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chatd", description="Room chat hub over Reticulum")
    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="TOML config file (written with defaults on first run)",
    )

    net = p.add_argument_group("reticulum")
    net.add_argument("--configdir", default=None, help="Reticulum config directory")
    net.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Hub identity file (created on first run)",
    )
    net.add_argument("--dest-name", default=None, help="Destination name, e.g. chatd.hub")
    net.add_argument("--no-announce", action="store_true", help="Do not announce at startup")

    storage = p.add_argument_group("storage")
    storage.add_argument(
        "--store-url", default=None, help="redis:// URL; an empty value keeps data in memory"
    )
    storage.add_argument(
        "--store-timeout", type=float, default=None, help="Seconds allowed per store call"
    )
    storage.add_argument(
        "--kdf-iterations", type=int, default=None, help="PBKDF2 iterations for nicknames"
    )

    logs = p.add_argument_group("logging")
    logs.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    logs.add_argument("--log-file", default=None, help="Log file; an empty value disables it")
    return p


def _none_if_empty(value: Any) -> str | None:
    return str(value) or None


# (argparse attribute, config field, conversion)
_OVERRIDES: tuple[tuple[str, str, Callable[[Any], Any]], ...] = (
    ("configdir", "configdir", str),
    ("dest_name", "dest_name", str),
    ("store_url", "store_url", _none_if_empty),
    ("store_timeout", "store_timeout_s", float),
    ("kdf_iterations", "kdf_iterations", int),
    ("log_level", "log_level", str),
    ("log_file", "log_file", _none_if_empty),
)


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    """Defaults, then the config file, then command line flags."""
    cfg = HubRuntimeConfig(config_path=str(args.config), identity_path=str(args.identity))
    if os.path.exists(cfg.config_path):
        cfg = apply_config_data(cfg, load_toml(cfg.config_path))

    updates: dict[str, Any] = {}
    for attr, field, convert in _OVERRIDES:
        value = getattr(args, attr, None)
        if value is not None:
            updates[field] = convert(value)
    if args.no_announce:
        updates["announce_on_start"] = False
    return replace(cfg, **updates) if updates else cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    created = _ensure_first_run_files(str(args.config), str(args.identity))
    if created:
        print("chatd created:", file=sys.stderr)
        for path in created:
            print(f"  {path}", file=sys.stderr)
        print("Review the configuration, then start chatd again.", file=sys.stderr)
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)
    asyncio.run(HubService(cfg).serve())


if __name__ == "__main__":
    main()
