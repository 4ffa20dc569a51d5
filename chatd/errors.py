"""Error taxonomy for chatd.

Every error a handler can raise derives from :class:`ChatError`. The
coordinator turns these into notices for the requesting client; anything else
is treated as a bug and logged with a traceback.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for errors surfaced to clients."""


class ValidationError(ChatError):
    """Malformed or unacceptable input. No state was changed."""


class AuthenticationError(ChatError):
    """Wrong channel password or wrong identity password."""


class NicknameTaken(ChatError):
    """A credential already exists for the nickname in this room."""


class UnknownNickname(ChatError):
    """No credential exists for the nickname in this room."""


class StoreError(ChatError):
    """The external store failed, timed out, or is unreachable.

    Recoverable: the request fails, the hub keeps running.
    """


class SequencingRace(ChatError):
    """A reserved message ID was already occupied in the room log."""

    def __init__(self, room: str, mid: int) -> None:
        super().__init__(f"message id {mid} already used in room {room!r}")
        self.room = room
        self.mid = mid
