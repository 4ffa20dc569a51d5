from __future__ import annotations

import hashlib
import os

from .constants import NICK_MAX_CHARS

# Display colors handed out to new clients, as "r,g,b" strings.
PALETTE = (
    "239,83,80",
    "171,71,188",
    "92,107,192",
    "41,182,246",
    "38,166,154",
    "156,204,101",
    "255,202,40",
    "255,112,67",
    "141,110,99",
    "120,144,156",
)


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_nick(value, *, max_chars: int = NICK_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars and len(s) > int(max_chars):
        return None

    # Keep this conservative: avoid embedded newlines or NUL, which frequently
    # cause UI/log formatting issues.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def strip_nick_command(value: str) -> str:
    """Drop a leading ``/nick`` that clients sometimes forward verbatim."""
    s = value.strip()
    if s.lower().startswith("/nick"):
        s = s[len("/nick") :]
    return s.strip()


def norm_room(room: str, *, max_len: int = 64) -> str:
    r = room.strip().lower()
    if not r:
        raise ValueError("room name must not be empty")
    if max_len and len(r) > int(max_len):
        raise ValueError("room name too long")
    return r


def color_for(cid: str) -> str:
    digest = hashlib.sha256(cid.encode("utf-8")).digest()
    return PALETTE[digest[0] % len(PALETTE)]
