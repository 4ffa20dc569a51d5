"""Inbound client events.

Every event a client may send is one of the dataclasses below. Raw payloads
are checked by :func:`parse_event` before anything is dispatched, so handlers
can rely on field presence and types.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Union

from .constants import (
    E_CHAT,
    E_HISTORY_REQUEST,
    E_IDENTIFY,
    E_IDLE,
    E_JOIN_PRIVATE,
    E_MAKE_PRIVATE,
    E_MAKE_PUBLIC,
    E_NICKNAME,
    E_PRIVATE_MESSAGE,
    E_REGISTER_NICK,
    E_SUBSCRIBE,
    E_TOPIC,
    E_UNIDLE,
    E_UNSUBSCRIBE,
)
from .errors import ValidationError

MAX_HISTORY_REQUEST = 500


@dataclass(frozen=True)
class Subscribe:
    room: str
    nickname: str | None = None


@dataclass(frozen=True)
class JoinPrivate:
    password: str


@dataclass(frozen=True)
class MakePublic:
    pass


@dataclass(frozen=True)
class MakePrivate:
    password: str


@dataclass(frozen=True)
class Nickname:
    nickname: str


@dataclass(frozen=True)
class Topic:
    topic: str


@dataclass(frozen=True)
class HistoryRequest:
    request_range: tuple[int, ...]


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Unidle:
    pass


@dataclass(frozen=True)
class PrivateMessage:
    body: str
    directed_at: str


@dataclass(frozen=True)
class Chat:
    body: str


@dataclass(frozen=True)
class Identify:
    password: str


@dataclass(frozen=True)
class RegisterNick:
    password: str


@dataclass(frozen=True)
class Unsubscribe:
    pass


Event = Union[
    Subscribe,
    JoinPrivate,
    MakePublic,
    MakePrivate,
    Nickname,
    Topic,
    HistoryRequest,
    Idle,
    Unidle,
    PrivateMessage,
    Chat,
    Identify,
    RegisterNick,
    Unsubscribe,
]


def _str(body: dict[str, Any], key: str, *, required: bool = True) -> str:
    value = body.get(key)
    if value is None:
        if required:
            raise ValidationError(f"missing field {key!r}")
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"field {key!r} must be a string")
    return value


def _id_list(body: dict[str, Any], key: str) -> tuple[int, ...]:
    value = body.get(key)
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"field {key!r} must be a list of message ids")
    if len(value) > MAX_HISTORY_REQUEST:
        raise ValidationError(f"at most {MAX_HISTORY_REQUEST} messages per history request")
    ids: list[int] = []
    for item in value:
        # bool is an int subclass; a stray true/false is not an id.
        if isinstance(item, bool) or not isinstance(item, int) or item < 0:
            raise ValidationError("message ids must be non-negative integers")
        ids.append(item)
    return tuple(ids)


def _subscribe(b: dict[str, Any]) -> Subscribe:
    room = _str(b, "room")
    if not room.strip():
        raise ValidationError("room name must not be empty")
    nick = b.get("nickname")
    if nick is not None and not isinstance(nick, str):
        raise ValidationError("field 'nickname' must be a string")
    return Subscribe(room, nick)


_PARSERS: dict[str, Callable[[dict[str, Any]], Event]] = {
    E_SUBSCRIBE: _subscribe,
    E_JOIN_PRIVATE: lambda b: JoinPrivate(_str(b, "password")),
    E_MAKE_PUBLIC: lambda b: MakePublic(),
    E_MAKE_PRIVATE: lambda b: MakePrivate(_str(b, "password")),
    E_NICKNAME: lambda b: Nickname(_str(b, "nickname")),
    E_TOPIC: lambda b: Topic(_str(b, "topic")),
    E_HISTORY_REQUEST: lambda b: HistoryRequest(_id_list(b, "requestRange")),
    E_IDLE: lambda b: Idle(),
    E_UNIDLE: lambda b: Unidle(),
    E_PRIVATE_MESSAGE: lambda b: PrivateMessage(
        _str(b, "body", required=False), _str(b, "directedAt", required=False)
    ),
    E_CHAT: lambda b: Chat(_str(b, "body", required=False)),
    E_IDENTIFY: lambda b: Identify(_str(b, "password")),
    E_REGISTER_NICK: lambda b: RegisterNick(_str(b, "password")),
    E_UNSUBSCRIBE: lambda b: Unsubscribe(),
}

# Events a client may send before it has been admitted to the room.
PRE_JOIN_EVENTS = (Subscribe, JoinPrivate, Unsubscribe)


def parse_event(name: Any, body: Any = None) -> Event:
    if not isinstance(name, str) or name not in _PARSERS:
        raise ValidationError(f"unknown event {name!r}")
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise ValidationError("event payload must be a map")
    return _PARSERS[name](body)
