"""Room membership for the chatd hub.

This module holds the in-memory view of the hub:
- Clients (one per transport connection) and their visible attributes
- Channels and their members, topic and visibility
- Nickname lookups within a room
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

from .constants import VISIBILITY_PUBLIC


class ClientState(enum.Enum):
    UNJOINED = "unjoined"
    JOINING = "joining"
    JOINED = "joined"
    LEFT = "left"


@dataclass(eq=False)
class Client:
    """A connected client.

    ``link`` is the transport's handle for delivering to this client; the hub
    never closes or otherwise owns it.
    """

    cid: str
    link: Any
    nick: str
    color: str
    room: str | None = None
    state: ClientState = ClientState.UNJOINED
    identified: bool = False
    idle: bool = False
    idle_since: int | None = None

    def set_nick(self, nick: str) -> None:
        self.nick = nick
        self.identified = False

    def mark_idle(self, now: int) -> None:
        self.idle = True
        self.idle_since = now

    def mark_unidle(self) -> None:
        self.idle = False
        self.idle_since = None

    def clear_room_state(self) -> None:
        """Forget state that only holds within the room being left."""
        self.identified = False
        self.mark_unidle()

    def to_public(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "cid": self.cid,
            "nick": self.nick,
            "color": self.color,
            "identified": self.identified,
            "idle": self.idle,
        }
        if self.idle_since is not None:
            out["idleSince"] = self.idle_since
        return out


@dataclass
class Channel:
    name: str
    topic: str | None = None
    visibility: str = VISIBILITY_PUBLIC
    members: dict[str, Client] = field(default_factory=dict)


class ChannelRegistry:
    """Authoritative map of rooms to members.

    Rooms are created on first join and kept for the life of the process, even
    once empty. A client is a member of at most one room.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("chatd.rooms")
        self.channels: dict[str, Channel] = {}

    def clear_all(self) -> None:
        """Drop all rooms. Called during hub shutdown."""
        self.channels.clear()

    def get(self, room: str) -> Channel | None:
        return self.channels.get(room)

    def ensure(self, room: str) -> Channel:
        ch = self.get(room)
        if ch is None:
            ch = self.channels[room] = Channel(room)
            self.log.debug("Room created room=%s", room)
        return ch

    def members(self, room: str) -> list[Client]:
        ch = self.get(room)
        return list(ch.members.values()) if ch is not None else []

    def join(self, room: str, client: Client) -> bool:
        """Add ``client`` to ``room``. Returns False if it was already there."""
        if client.room is not None and client.room != room:
            self.leave(client.room, client)
        ch = self.ensure(room)
        if client.cid in ch.members:
            return False
        ch.members[client.cid] = client
        client.room = room
        return True

    def leave(self, room: str, client: Client) -> bool:
        """Remove ``client`` from ``room``. Returns False if it was not a member."""
        ch = self.get(room)
        if ch is None or ch.members.pop(client.cid, None) is None:
            return False
        if client.room == room:
            client.room = None
        return True

    def is_member(self, room: str, client: Client) -> bool:
        ch = self.get(room)
        return ch is not None and client.cid in ch.members

    def find_by_nickname(self, room: str, nickname: str) -> list[Client]:
        return [c for c in self.members(room) if c.nick == nickname]

    def set_topic(self, room: str, text: str | None) -> None:
        self.ensure(room).topic = text

    def get_topic(self, room: str) -> str | None:
        ch = self.get(room)
        return ch.topic if ch is not None else None

    def set_visibility(self, room: str, visibility: str) -> None:
        self.ensure(room).visibility = visibility

    def get_stats(self) -> dict[str, Any]:
        """Room statistics for hub stats."""
        memberships = sum(len(ch.members) for ch in self.channels.values())
        top_rooms = sorted(
            ((name, len(ch.members)) for name, ch in self.channels.items()),
            key=lambda x: (-x[1], x[0]),
        )[:5]
        return {
            "rooms_total": len(self.channels),
            "memberships": memberships,
            "top_rooms": top_rooms,
        }
