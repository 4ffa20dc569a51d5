"""Message sending utilities for the chatd hub."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from .constants import O_CHAT, TYPE_SYSTEM
from .envelope import make_envelope, now_ms

if TYPE_CHECKING:
    from .rooms import ChannelRegistry, Client
    from .stats import StatsManager


class Transport(Protocol):
    """Delivery side of the real-time transport.

    ``deliver`` hands one envelope to one client's connection and must not
    block; delivery failures are the transport's to report by raising.
    """

    def deliver(self, link: Any, envelope: dict) -> None: ...


class MessageHelper:
    """
    Builds and sends outbound envelopes.

    Handles:
    - System message construction (server nickname, SYSTEM type, timestamp)
    - Delivery to a single client
    - Fan-out to every member of a room, optionally excluding one client
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        transport: Transport,
        *,
        server_nick: str = "Server",
        stats: StatsManager | None = None,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.server_nick = server_nick
        self.stats = stats
        self.log = logging.getLogger("chatd.messages")

    def system_message(
        self,
        room: str,
        body: Any,
        *,
        cls: str | None = None,
        log: bool | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        msg: dict[str, Any] = dict(extra)
        msg["body"] = body
        if cls is not None:
            msg["class"] = cls
        if log is not None:
            msg["log"] = log
        msg.update(
            nickname=self.server_nick,
            type=TYPE_SYSTEM,
            timestamp=now_ms(),
            room=room,
        )
        return msg

    def send(self, client: Client, event: str, room: str | None, body: dict | None) -> None:
        env = make_envelope(event, room=room, body=body)
        try:
            self.transport.deliver(client.link, env)
        except Exception:
            self.log.warning(
                "Deliver failed cid=%s event=%s room=%s", client.cid, event, room, exc_info=True
            )
            return
        if self.stats is not None:
            self.stats.inc("envelopes_out")

    def to_room(
        self,
        room: str,
        event: str,
        body: dict | None,
        *,
        exclude: Client | None = None,
    ) -> int:
        """Send to every member of ``room``. Returns the number of recipients."""
        sent = 0
        for member in self.registry.members(room):
            if exclude is not None and member.cid == exclude.cid:
                continue
            self.send(member, event, room, body)
            sent += 1
        return sent

    def notice(self, client: Client, room: str, text: str, **kwargs: Any) -> None:
        """Send a system chat line to one client."""
        self.send(client, O_CHAT, room, self.system_message(room, text, **kwargs))

    def room_notice(
        self, room: str, text: str, *, exclude: Client | None = None, **kwargs: Any
    ) -> None:
        """Send a system chat line to a whole room."""
        self.to_room(room, O_CHAT, self.system_message(room, text, **kwargs), exclude=exclude)
