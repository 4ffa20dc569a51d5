from __future__ import annotations

from .constants import O_IDLE, O_UNIDLE
from .envelope import now_ms
from .messages import MessageHelper
from .presence import PresencePublisher
from .rooms import Client


class IdleTracker:
    """Idle/unidle transitions. Each call notifies the room and refreshes presence."""

    def __init__(self, messages: MessageHelper, presence: PresencePublisher) -> None:
        self.messages = messages
        self.presence = presence

    def mark_idle(self, room: str, client: Client) -> None:
        if not client.idle:
            client.mark_idle(now_ms())
        self.messages.to_room(
            room, O_IDLE, {"cID": client.cid, "idleSince": client.idle_since, "room": room}
        )
        self.presence.publish(room)

    def mark_unidle(self, room: str, client: Client) -> None:
        client.mark_unidle()
        self.messages.to_room(room, O_UNIDLE, {"cID": client.cid, "room": room})
        self.presence.publish(room)
