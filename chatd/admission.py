"""Channel admission.

Deciding who may enter a room is not the coordinator's job; it asks an
:class:`Admission` implementation. :class:`RoomKeyAdmission` is the built-in
one: rooms are public until someone sets a password, after which joiners must
present it.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from typing import Protocol

from .constants import INCORRECT_PASSWORD
from .errors import AuthenticationError, ValidationError
from .rooms import Client

PRIVATE_CHANNEL = "This channel is private."


class Admission(Protocol):
    async def authenticate(self, room: str, client: Client, password: str | None) -> None:
        """Raise AuthenticationError unless ``client`` may join ``room``."""

    async def make_public(self, room: str, client: Client) -> None: ...

    async def make_private(self, room: str, client: Client, password: str) -> None: ...

    async def unauthenticate(self, room: str, client: Client) -> None: ...


class RoomKeyAdmission:
    def __init__(self) -> None:
        self.log = logging.getLogger("chatd.admission")
        self._keys: dict[str, tuple[bytes, bytes]] = {}  # room -> (salt, digest)

    @staticmethod
    def _digest(password: str, salt: bytes) -> bytes:
        return hashlib.sha256(salt + password.encode("utf-8")).digest()

    async def authenticate(self, room: str, client: Client, password: str | None) -> None:
        key = self._keys.get(room)
        if key is not None:
            if password is None:
                raise AuthenticationError(PRIVATE_CHANNEL)
            salt, digest = key
            if not hmac.compare_digest(self._digest(password, salt), digest):
                raise AuthenticationError(INCORRECT_PASSWORD)

    async def make_public(self, room: str, client: Client) -> None:
        if self._keys.pop(room, None) is not None:
            self.log.info("Room made public room=%s cid=%s", room, client.cid)

    async def make_private(self, room: str, client: Client, password: str) -> None:
        if not password:
            raise ValidationError("A password is required to make a channel private.")
        salt = os.urandom(16)
        self._keys[room] = (salt, self._digest(password, salt))
        self.log.info("Room made private room=%s cid=%s", room, client.cid)

    async def unauthenticate(self, room: str, client: Client) -> None:
        """Keys belong to the room, so a departing client leaves nothing behind."""
