from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Third-party loggers and the config field holding each one's level.
_LIBRARY_LEVELS = {
    "RNS": "log_rns_level",
    "redis": "log_redis_level",
}

_LEVEL_NAMES = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}


def parse_level(value: Any, default: int) -> int:
    """Accept a level name, a number, or a numeric string."""
    if isinstance(value, int):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return default
    if text in _LEVEL_NAMES:
        return _LEVEL_NAMES[text]
    return int(text) if text.isdigit() else default


def _non_blank(value: Any) -> str | None:
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
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install chatd's root handlers, replacing any already present.

    ``override_file`` takes precedence over ``cfg.log_file``; an empty string
    there falls back to the config value.
    """
    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())

    log_file = _non_blank(override_file) or _non_blank(cfg.log_file)
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=_non_blank(cfg.log_format) or DEFAULT_FORMAT,
        datefmt=_non_blank(cfg.log_datefmt),
    )

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(parse_level(override_level or cfg.log_level, logging.INFO))

    for name, field in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(parse_level(getattr(cfg, field), logging.WARNING))

    logging.captureWarnings(True)
