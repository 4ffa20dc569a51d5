from __future__ import annotations

import logging

from .constants import CLASS_PRIVATE, O_PRIVATE_MESSAGE, TYPE_PRIVATE
from .envelope import now_ms
from .messages import MessageHelper
from .rooms import ChannelRegistry, Client


class PrivateMessageRouter:
    """Delivers a message to every member of a room holding the target nickname."""

    def __init__(self, registry: ChannelRegistry, messages: MessageHelper) -> None:
        self.registry = registry
        self.messages = messages
        self.log = logging.getLogger("chatd.private")

    def route(self, sender: Client, room: str, target: str, body: str) -> int:
        """Returns how many members received the message.

        Empty ``body`` or ``target`` is ignored. When nobody in the room has the
        target nickname the sender gets a notice instead.
        """
        if not body or not target:
            return 0

        recipients = self.registry.find_by_nickname(room, target)
        if not recipients:
            self.messages.notice(sender, room, f"No one named {target} is in this room.", log=False)
            self.log.debug("Private message dropped room=%s target=%r", room, target)
            return 0

        msg = {
            "body": body,
            "directedAt": target,
            "cID": sender.cid,
            "color": sender.color,
            "nickname": sender.nick,
            "timestamp": now_ms(),
            "type": TYPE_PRIVATE,
            "class": CLASS_PRIVATE,
            "room": room,
        }
        for client in recipients:
            self.messages.send(client, O_PRIVATE_MESSAGE, room, msg)
        self.messages.send(sender, O_PRIVATE_MESSAGE, room, {**msg, "you": True})
        return len(recipients)
