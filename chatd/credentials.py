"""Credential persistence for registered nicknames."""

from __future__ import annotations

from dataclasses import dataclass

from .constants import SK_PASSWORDS, SK_REGISTERING, SK_SALTS, SK_USERS
from .store import StoreAdapter


@dataclass(frozen=True)
class Credential:
    nickname: str
    salt: bytes
    derived_key: bytes


class CredentialStore(StoreAdapter):
    """Salt / derived-key storage keyed by (room, nickname).

    Layout per room: a set of registered nicknames, a hash nickname -> salt and
    a hash nickname -> derived key (both hex). All three are written in one
    transaction, so set membership implies a complete credential. While a
    registration is in flight the nickname is held by an expiring claim; a
    registration that dies half way frees the nickname once the claim lapses.
    """

    def __init__(self, store, *, claim_ttl_s: float = 30.0, **kwargs) -> None:
        kwargs.setdefault("logger_name", "chatd.credentials")
        super().__init__(store, **kwargs)
        self.claim_ttl_s = float(claim_ttl_s)

    @staticmethod
    def _claim_key(room: str, nickname: str) -> str:
        return f"{SK_REGISTERING}{room}:{nickname}"

    async def is_registered(self, room: str, nickname: str) -> bool:
        return bool(await self._read("sismember", SK_USERS + room, nickname))

    async def load(self, room: str, nickname: str) -> Credential | None:
        if not await self.is_registered(room, nickname):
            return None
        salt = await self._read("hget", SK_SALTS + room, nickname)
        key = await self._read("hget", SK_PASSWORDS + room, nickname)
        if salt is None or key is None:
            self.log.warning(
                "Incomplete credential room=%s nick=%r; treating as unregistered",
                room,
                nickname,
            )
            return None
        return Credential(nickname, bytes.fromhex(salt), bytes.fromhex(key))

    async def claim(self, room: str, nickname: str, token: str) -> bool:
        """Hold ``nickname`` for ``claim_ttl_s`` unless someone else holds it."""
        return bool(
            await self._write(
                "claim", self._claim_key(room, nickname), token, self.claim_ttl_s
            )
        )

    async def commit(self, room: str, credential: Credential) -> None:
        nick = credential.nickname
        await self._write(
            "transaction",
            [
                ("hset", SK_SALTS + room, nick, credential.salt.hex()),
                ("hset", SK_PASSWORDS + room, nick, credential.derived_key.hex()),
                ("sadd", SK_USERS + room, nick),
            ],
        )

    async def release(self, room: str, nickname: str, token: str) -> None:
        await self._write("release_claim", self._claim_key(room, nickname), token)
