from __future__ import annotations

import asyncio

import pytest

from chatd.config import HubRuntimeConfig
from chatd.coordinator import ChannelCoordinator
from chatd.events import Subscribe
from chatd.store import MemoryStore


class RecordingTransport:
    """Keeps every delivered envelope instead of sending it anywhere."""

    def __init__(self) -> None:
        self.sent: list[tuple[object, dict]] = []

    def deliver(self, link, envelope: dict) -> None:
        self.sent.append((link, envelope))

    def to(self, link, event: str | None = None) -> list[dict]:
        return [
            env.get("body")
            for lnk, env in self.sent
            if lnk == link and (event is None or env["event"] == event)
        ]

    def events(self, link) -> list[str]:
        return [env["event"] for lnk, env in self.sent if lnk == link]

    def chat_lines(self, link) -> list[str]:
        return [b["body"] for b in self.to(link, "chat")]

    def clear(self) -> None:
        self.sent.clear()


class FakeClock:
    """Monotonic clock that only moves when a test moves it."""

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class YieldingStore(MemoryStore):
    """MemoryStore that gives other tasks a chance to run inside each call."""

    async def hincrby(self, key, field, amount=1):
        await asyncio.sleep(0)
        return await super().hincrby(key, field, amount)

    async def hsetnx(self, key, field, value):
        await asyncio.sleep(0)
        return await super().hsetnx(key, field, value)


@pytest.fixture
def cfg() -> HubRuntimeConfig:
    return HubRuntimeConfig(
        kdf_iterations=1000,
        store_timeout_s=2.0,
        store_retry_delay_s=0.0,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def coordinator(cfg, store, transport) -> ChannelCoordinator:
    return ChannelCoordinator(cfg, store=store, transport=transport)


@pytest.fixture
def joiner(coordinator):
    """Returns ``async join(cid, nick, room="lobby") -> Client``."""

    async def join(cid: str, nick: str, room: str = "lobby"):
        client = coordinator.new_client(cid, f"link-{cid}", nick=nick)
        await coordinator.dispatch(client, Subscribe(room))
        return client

    return join
