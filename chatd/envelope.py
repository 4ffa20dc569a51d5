from __future__ import annotations

import time

from .constants import K_BODY, K_EVENT, K_ROOM, K_TS, K_V, WIRE_VERSION


def now_ms() -> int:
    return int(time.time() * 1000)


def make_envelope(
    event: str,
    *,
    room: str | None = None,
    body=None,
    ts: int | None = None,
) -> dict:
    env: dict[str, object] = {
        K_V: WIRE_VERSION,
        K_EVENT: str(event),
        K_TS: ts or now_ms(),
    }
    if room is not None:
        env[K_ROOM] = room
    if body is not None:
        env[K_BODY] = body
    return env


def validate_envelope(env: dict) -> None:
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    for k in env.keys():
        if not isinstance(k, str):
            raise TypeError("envelope keys must be strings")

    for k in (K_V, K_EVENT):
        if k not in env:
            raise ValueError(f"missing envelope key {k!r}")

    v = env[K_V]
    if not isinstance(v, int):
        raise TypeError("protocol version must be an integer")
    if v != WIRE_VERSION:
        raise ValueError(f"unsupported version {v}")

    event = env[K_EVENT]
    if not isinstance(event, str):
        raise TypeError("event name must be a string")
    if not event:
        raise ValueError("event name must not be empty")

    if K_TS in env:
        ts = env[K_TS]
        if not isinstance(ts, int):
            raise TypeError("timestamp must be an integer")
        if ts < 0:
            raise ValueError("timestamp must be unsigned")

    if K_ROOM in env:
        room = env[K_ROOM]
        if not isinstance(room, str):
            raise TypeError("room name must be a string")
        if room == "":
            raise ValueError("room name must not be empty")

    if K_BODY in env and not isinstance(env[K_BODY], dict):
        raise TypeError("envelope body must be a map")
