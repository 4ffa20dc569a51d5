from __future__ import annotations

import asyncio
import logging
import os
import signal
from concurrent.futures import Future
from typing import Any, Coroutine

import RNS

from .codec import decode, encode
from .config import HubRuntimeConfig
from .constants import E_NICKNAME, E_SUBSCRIBE, K_BODY, K_EVENT, K_ROOM, O_ACK, WIRE_VERSION
from .coordinator import ChannelCoordinator
from .envelope import validate_envelope
from .rooms import Client
from .stats import StatsManager
from .store import KeyValueStore, build_store
from .util import expand_path


def fmt_link_id(link: Any) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return "-"


class LinkTransport:
    """Sends envelopes as single Reticulum packets on a client's link."""

    def __init__(self, stats: StatsManager) -> None:
        self.stats = stats
        self.log = logging.getLogger("chatd.transport")

    def deliver(self, link: RNS.Link, envelope: dict) -> None:
        payload = encode(envelope)
        mdu = getattr(link, "MDU", None)
        if mdu is not None and len(payload) > mdu:
            raise OSError(f"envelope of {len(payload)} bytes exceeds link MDU {mdu}")
        RNS.Packet(link, payload).send()
        self.stats.inc("bytes_out", len(payload))


class HubService:
    """Hosts the hub on a Reticulum destination.

    Each established link is one client. RNS invokes callbacks on its own
    threads; they are handed to the asyncio loop, where all hub state lives.
    """

    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        store: KeyValueStore | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("chatd.hub")

        self.store = store or build_store(
            config.store_url, socket_timeout=config.store_timeout_s
        )
        self.stats = StatsManager()
        self.transport = LinkTransport(self.stats)
        self.coordinator = ChannelCoordinator(
            config, store=self.store, transport=self.transport, stats=self.stats
        )

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        # Only touched from the event loop.
        self.clients: dict[RNS.Link, Client] = {}

        self._loop: asyncio.AbstractEventLoop | None = None
        self._shutdown: asyncio.Event | None = None

    def start(self) -> None:
        """Bring up Reticulum and open the hub's inbound destination."""
        self.log.info("Bringing up Reticulum configdir=%s", self.config.configdir or "-")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        self.identity = self._load_identity(self.config.identity_path)
        self.destination = self._make_destination(self.identity)
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()
        self.log.info(
            "Hub listening name=%s dest=%s",
            self.config.dest_name,
            self.destination.hash.hex(),
        )

    def _make_destination(self, identity: RNS.Identity) -> RNS.Destination:
        app_name, *aspects = [p for p in str(self.config.dest_name).split(".") if p] or [""]
        if not app_name:
            raise ValueError("dest_name must name at least an app, e.g. chatd.hub")
        return RNS.Destination(
            identity, RNS.Destination.IN, RNS.Destination.SINGLE, app_name, *aspects
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        app_data = encode({"proto": "chatd", "v": WIRE_VERSION, "hub": self.config.hub_name})
        try:
            self.destination.announce(app_data=app_data)
        except Exception:
            self.log.exception("Could not announce dest=%s", self.destination.hash.hex())

    def _load_identity(self, path: str | None) -> RNS.Identity:
        if not path:
            raise RuntimeError("No identity_path configured")
        resolved = expand_path(path)
        ident = RNS.Identity.from_file(resolved) if os.path.exists(resolved) else None
        if ident is None:
            raise RuntimeError(f"Could not load hub identity from {resolved}")
        return ident

    async def serve(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._shutdown = asyncio.Event()
        self.stats.set_start_time()

        if not await self.store.ping():
            self.log.warning("Store did not answer PING; requests may fail until it does")

        self.start()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.add_signal_handler(sig, self._shutdown.set)
            except (NotImplementedError, RuntimeError):
                pass

        await self._shutdown.wait()
        await self.stop()

    def request_stop(self) -> None:
        if self._loop is not None and self._shutdown is not None:
            self._loop.call_soon_threadsafe(self._shutdown.set)

    async def stop(self) -> None:
        links = list(self.clients.keys())
        for client in list(self.clients.values()):
            await self.coordinator.disconnect(client)
        self.clients.clear()
        self.coordinator.shutdown()

        for link in links:
            try:
                link.teardown()
            except Exception:
                self.log.debug("Teardown failed link_id=%s", fmt_link_id(link), exc_info=True)

        await self.store.close()

    # RNS callbacks (Reticulum threads)

    def _submit(self, coro: Coroutine[Any, Any, None]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            coro.close()
            return
        fut = asyncio.run_coroutine_threadsafe(coro, loop)
        fut.add_done_callback(self._report_failure)

    def _report_failure(self, fut: Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            self.log.error("Link task failed", exc_info=exc)

    def _on_link(self, link: RNS.Link) -> None:
        link.set_packet_callback(lambda data, pkt: self._submit(self._on_packet(link, data)))
        link.set_link_closed_callback(lambda closed_link: self._submit(self._on_close(closed_link)))
        self._submit(self._register(link))
        self.log.info("Link established link_id=%s", fmt_link_id(link))

    # Loop side

    async def _register(self, link: RNS.Link) -> None:
        if link in self.clients:
            return
        cid = fmt_link_id(link)[:16]
        self.clients[link] = self.coordinator.new_client(cid, link)

    async def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        client = self.clients.get(link)
        if client is None:
            await self._register(link)
            client = self.clients[link]

        self.stats.inc("bytes_in", len(data))
        try:
            env = decode(data)
            validate_envelope(env)
        except (ValueError, TypeError) as e:
            self.stats.inc("envelopes_bad")
            self.log.debug(
                "Bad packet cid=%s link_id=%s bytes=%s err=%s",
                client.cid,
                fmt_link_id(link),
                len(data),
                e,
            )
            self.coordinator.messages.notice(client, client.room, f"bad message: {e}", log=False)
            return

        event = env[K_EVENT]
        body = env.get(K_BODY) or {}
        # subscribe may name its room at envelope level.
        if event == E_SUBSCRIBE and "room" not in body and isinstance(env.get(K_ROOM), str):
            body = {**body, "room": env[K_ROOM]}

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX cid=%s link_id=%s event=%s room=%r bytes=%s",
                client.cid,
                fmt_link_id(link),
                event,
                client.room,
                len(data),
            )

        result = await self.coordinator.dispatch_raw(client, event, body)
        if event == E_NICKNAME and result:
            self.coordinator.messages.send(client, O_ACK, client.room, {"event": E_NICKNAME})

    async def _on_close(self, link: RNS.Link) -> None:
        client = self.clients.pop(link, None)
        if client is None:
            return
        await self.coordinator.disconnect(client)
        self.log.info(
            "Link closed cid=%s nick=%r link_id=%s", client.cid, client.nick, fmt_link_id(link)
        )
