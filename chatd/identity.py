"""Nickname registration and verification.

A nickname is registered per room with a password. The password is never
stored: only a random salt and a PBKDF2 key derived from it are kept. Key
derivation runs in a worker thread so it never stalls the event loop.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os

from .credentials import Credential, CredentialStore
from .errors import NicknameTaken, StoreError, UnknownNickname, ValidationError
from .rooms import Client


class IdentityService:
    def __init__(
        self,
        credentials: CredentialStore,
        *,
        digest: str = "sha256",
        iterations: int = 100_000,
        key_len: int = 64,
        salt_len: int = 32,
    ) -> None:
        self.credentials = credentials
        self.digest = digest
        self.iterations = int(iterations)
        self.key_len = int(key_len)
        self.salt_len = int(salt_len)
        self.log = logging.getLogger("chatd.identity")

    async def derive(self, password: str, salt: bytes) -> bytes:
        return await asyncio.to_thread(
            hashlib.pbkdf2_hmac,
            self.digest,
            password.encode("utf-8"),
            salt,
            self.iterations,
            self.key_len,
        )

    async def register(
        self,
        room: str,
        nickname: str,
        password: str,
        *,
        client: Client | None = None,
    ) -> Credential:
        """Bind ``nickname`` in ``room`` to ``password``.

        Raises NicknameTaken if the nickname already has (or is in the middle
        of getting) a credential. On success ``client`` is marked identified.
        """
        if not password:
            raise ValidationError("A password is required to register a nickname.")

        token = os.urandom(16).hex()
        if not await self.credentials.claim(room, nickname, token):
            raise NicknameTaken(f"{nickname} is already registered.")

        try:
            # Checked under the claim: a rival may have committed just before.
            if await self.credentials.is_registered(room, nickname):
                raise NicknameTaken(f"{nickname} is already registered.")
            salt = os.urandom(self.salt_len)
            credential = Credential(nickname, salt, await self.derive(password, salt))
            await self.credentials.commit(room, credential)
        finally:
            try:
                await self.credentials.release(room, nickname, token)
            except StoreError as e:
                self.log.warning(
                    "Claim not released room=%s nick=%r err=%s; it lapses after %ss",
                    room,
                    nickname,
                    e,
                    self.credentials.claim_ttl_s,
                )

        self.log.info("Registered room=%s nick=%r", room, nickname)
        if client is not None and client.nick == nickname:
            client.identified = True
        return credential

    async def verify(
        self,
        room: str,
        nickname: str,
        password: str,
        *,
        client: Client | None = None,
    ) -> bool:
        """Check ``password`` against the stored credential for ``nickname``.

        Raises UnknownNickname if nothing is registered. Updates
        ``client.identified`` unless the client changed nickname meanwhile.
        """
        credential = await self.credentials.load(room, nickname)
        if credential is None:
            raise UnknownNickname(f"There's no registration on file for {nickname}")

        key = await self.derive(password or "", credential.salt)
        ok = hmac.compare_digest(key, credential.derived_key)

        if client is not None and client.nick == nickname:
            client.identified = ok
        if not ok:
            self.log.info("Identify failed room=%s nick=%r", room, nickname)
        return ok
