from __future__ import annotations

import logging

from .constants import O_USERLIST
from .messages import MessageHelper
from .rooms import ChannelRegistry


class PresencePublisher:
    """Broadcasts the room's userlist. Recomputed on every call, never cached."""

    def __init__(self, registry: ChannelRegistry, messages: MessageHelper) -> None:
        self.registry = registry
        self.messages = messages
        self.log = logging.getLogger("chatd.presence")

    def snapshot(self, room: str) -> list[dict]:
        return [c.to_public() for c in self.registry.members(room)]

    def publish(self, room: str) -> None:
        users = self.snapshot(room)
        self.messages.to_room(room, O_USERLIST, {"users": users, "room": room})
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Userlist room=%s members=%s", room, len(users))
