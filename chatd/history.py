"""Per-room message history: ID counters, message log, topic.

Message IDs are assigned by :class:`MessageSequencer`. IDs start at 0 and are
unique and gap-free per room; the stored counter always holds the next ID to
hand out, which is also the watermark sent to joining clients.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable

from .constants import SK_CHATLOG, SK_CURRENT_ID, SK_TOPIC
from .errors import SequencingRace
from .store import StoreAdapter


class HistoryStore(StoreAdapter):
    def __init__(self, store, **kwargs) -> None:
        kwargs.setdefault("logger_name", "chatd.history")
        super().__init__(store, **kwargs)

    async def current_id(self, room: str) -> int:
        reply = await self._read("hget", SK_CURRENT_ID, room)
        return int(reply) if reply else 0

    async def reserve_id(self, room: str) -> int:
        """Atomically take the next ID for ``room``."""
        return int(await self._write("hincrby", SK_CURRENT_ID, room, 1)) - 1

    async def append(self, room: str, mid: int, message: dict[str, Any]) -> bool:
        """Store ``message`` under ``mid``. Returns False if the slot is taken."""
        payload = json.dumps(message, separators=(",", ":"))
        return bool(await self._write("hsetnx", SK_CHATLOG + room, str(mid), payload))

    async def fetch_range(self, room: str, ids: Iterable[int]) -> list[dict[str, Any]]:
        wanted = [int(i) for i in ids]
        if not wanted:
            return []
        replies = await self._read("hmget", SK_CHATLOG + room, [str(i) for i in wanted])
        out: list[dict[str, Any]] = []
        for mid, raw in zip(wanted, replies):
            if raw is None:
                continue
            try:
                out.append(json.loads(raw))
            except ValueError:
                self.log.warning("Skipping unreadable log entry room=%s id=%s", room, mid)
        return out

    async def get_topic(self, room: str) -> str | None:
        return await self._read("hget", SK_TOPIC, room)

    async def set_topic(self, room: str, topic: str) -> None:
        await self._write("hset", SK_TOPIC, room, topic)


class MessageSequencer:
    """Assigns message IDs and logs messages, one writer per room at a time.

    The counter increment is atomic in the store; the per-room lock keeps
    "reserve then append" pairs from interleaving so the log fills in ID order.
    """

    def __init__(self, history: HistoryStore, *, max_attempts: int = 3) -> None:
        self.history = history
        self.max_attempts = max(1, int(max_attempts))
        self.log = logging.getLogger("chatd.sequencer")
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, room: str) -> asyncio.Lock:
        lock = self._locks.get(room)
        if lock is None:
            lock = self._locks[room] = asyncio.Lock()
        return lock

    async def next_id(self, room: str) -> int:
        async with self._lock_for(room):
            return await self.history.reserve_id(room)

    async def publish(self, room: str, message: dict[str, Any]) -> dict[str, Any]:
        """Give ``message`` the next ID in ``room`` and persist it.

        Returns a copy of the message carrying its ``ID``. If the reserved slot
        turns out to be occupied, the ID is abandoned and a fresh one reserved,
        up to ``max_attempts`` times before :class:`SequencingRace` is raised.
        """
        async with self._lock_for(room):
            attempt = 1
            while True:
                mid = await self.history.reserve_id(room)
                stamped = {**message, "ID": mid}
                if await self.history.append(room, mid, stamped):
                    if self.log.isEnabledFor(logging.DEBUG):
                        self.log.debug("Logged room=%s id=%s", room, mid)
                    return stamped
                self.log.error(
                    "Sequencing race room=%s id=%s attempt=%s/%s",
                    room,
                    mid,
                    attempt,
                    self.max_attempts,
                )
                if attempt >= self.max_attempts:
                    raise SequencingRace(room, mid)
                attempt += 1
