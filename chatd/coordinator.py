"""Channel coordination for the chatd hub.

:class:`ChannelCoordinator` receives inbound events for a client (already
bound to a connection by the transport), runs the matching handler and emits
the resulting broadcasts. It owns the registry and wires together the store
adapters, identity service, presence publisher, private message router and
idle tracker.

Client states: UNJOINED -> JOINING -> JOINED -> LEFT. Only ``subscribe``,
``join_private`` and ``unsubscribe`` are accepted before JOINED.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .admission import PRIVATE_CHANNEL, Admission, RoomKeyAdmission
from .config import HubRuntimeConfig
from .constants import (
    CLASS_IDENTITY,
    CLASS_JOIN,
    CLASS_PART,
    INCORRECT_PASSWORD,
    O_CHAT,
    O_CURRENT_ID,
    O_PRIVATE,
    O_TOPIC,
    O_YOUR_CID,
    VISIBILITY_PRIVATE,
    VISIBILITY_PUBLIC,
)
from .credentials import CredentialStore
from .envelope import now_ms
from .errors import (
    AuthenticationError,
    ChatError,
    NicknameTaken,
    SequencingRace,
    StoreError,
    UnknownNickname,
    ValidationError,
)
from .events import (
    PRE_JOIN_EVENTS,
    Chat,
    Event,
    HistoryRequest,
    Identify,
    Idle,
    JoinPrivate,
    MakePrivate,
    MakePublic,
    Nickname,
    PrivateMessage,
    RegisterNick,
    Subscribe,
    Topic,
    Unidle,
    Unsubscribe,
    parse_event,
)
from .history import HistoryStore, MessageSequencer
from .identity import IdentityService
from .idle import IdleTracker
from .messages import MessageHelper, Transport
from .presence import PresencePublisher
from .private import PrivateMessageRouter
from .rooms import ChannelRegistry, Client, ClientState
from .stats import StatsManager
from .store import KeyValueStore
from .util import color_for, norm_room, normalize_nick, strip_nick_command

GENERIC_FAILURE = "The server could not complete your request. Please try again."
SEND_FAILURE = "Your message could not be delivered. Please try again."


class ChannelCoordinator:
    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        store: KeyValueStore,
        transport: Transport,
        admission: Admission | None = None,
        registry: ChannelRegistry | None = None,
        stats: StatsManager | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("chatd.coordinator")
        self.stats = stats or StatsManager()
        self.registry = registry or ChannelRegistry()
        self.admission: Admission = admission or RoomKeyAdmission()

        adapter_opts = {
            "timeout_s": config.store_timeout_s,
            "read_attempts": config.store_read_attempts,
            "retry_delay_s": config.store_retry_delay_s,
        }
        self.history = HistoryStore(store, **adapter_opts)
        self.sequencer = MessageSequencer(
            self.history, max_attempts=config.sequencer_max_attempts
        )
        self.identity = IdentityService(
            CredentialStore(store, claim_ttl_s=config.store_claim_ttl_s, **adapter_opts),
            digest=config.kdf_digest,
            iterations=config.kdf_iterations,
            key_len=config.kdf_key_len,
            salt_len=config.kdf_salt_len,
        )

        self.messages = MessageHelper(
            self.registry, transport, server_nick=config.server_nick, stats=self.stats
        )
        self.presence = PresencePublisher(self.registry, self.messages)
        self.private = PrivateMessageRouter(self.registry, self.messages)
        self.idle = IdleTracker(self.messages, self.presence)

        self._handlers: dict[type, Callable[[Client, Any], Awaitable[Any]]] = {
            Subscribe: self._handle_subscribe,
            JoinPrivate: self._handle_join_private,
            MakePublic: self._handle_make_public,
            MakePrivate: self._handle_make_private,
            Nickname: self._handle_nickname,
            Topic: self._handle_topic,
            HistoryRequest: self._handle_history_request,
            Idle: self._handle_idle,
            Unidle: self._handle_unidle,
            PrivateMessage: self._handle_private_message,
            Chat: self._handle_chat,
            Identify: self._handle_identify,
            RegisterNick: self._handle_register_nick,
            Unsubscribe: self._handle_unsubscribe,
        }

    def new_client(self, cid: str, link: Any, *, nick: str | None = None) -> Client:
        return Client(
            cid=cid,
            link=link,
            nick=nick or self.config.default_nick,
            color=color_for(cid),
        )

    async def dispatch_raw(self, client: Client, name: Any, body: Any) -> Any:
        """Validate a raw ``(event, payload)`` pair, then dispatch it."""
        self.stats.inc("envelopes_in")
        try:
            event = parse_event(name, body)
        except ValidationError as e:
            self.stats.inc("envelopes_bad")
            self.log.debug("Rejected event=%r cid=%s err=%s", name, client.cid, e)
            self.messages.notice(client, client.room, f"Bad request: {e}", log=False)
            return None
        return await self.dispatch(client, event)

    async def dispatch(self, client: Client, event: Event) -> Any:
        """Run the handler for ``event``.

        Errors never escape: user-facing ones become a notice to ``client``;
        store failures and unexpected exceptions are logged and reported
        generically.
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            self.messages.notice(client, client.room, "Unsupported request.", log=False)
            return None

        if client.state is not ClientState.JOINED and not isinstance(event, PRE_JOIN_EVENTS):
            self.messages.notice(client, client.room, "You are not in a room.", log=False)
            return None

        try:
            return await handler(client, event)
        except (ValidationError, AuthenticationError, NicknameTaken, UnknownNickname) as e:
            self.messages.notice(client, client.room, str(e), log=False)
        except SequencingRace as e:
            self.stats.inc("sequencing_races")
            self.log.error("Send abandoned cid=%s err=%s", client.cid, e)
            self.messages.notice(client, client.room, SEND_FAILURE, log=False)
        except StoreError as e:
            self._store_failed(client, e, type(event).__name__)
        except ChatError as e:
            self.messages.notice(client, client.room, str(e), log=False)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.exception(
                "Handler failed event=%s cid=%s room=%s",
                type(event).__name__,
                client.cid,
                client.room,
            )
            self.messages.notice(client, client.room, GENERIC_FAILURE, log=False)
        return None

    async def disconnect(self, client: Client) -> None:
        """Transport-level disconnect: same as unsubscribe, but never raises."""
        try:
            await self._part(client)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.exception("Disconnect cleanup failed cid=%s", client.cid)

    def shutdown(self) -> None:
        self.log.info("Coordinator stopping\n%s", self.stats.format_stats(self.registry))
        self.registry.clear_all()

    def _store_failed(self, client: Client, err: StoreError, what: str) -> None:
        self.stats.inc("store_errors")
        self.log.warning(
            "Store failure during %s cid=%s room=%s err=%s", what, client.cid, client.room, err
        )
        self.messages.notice(client, client.room, GENERIC_FAILURE, log=False)

    def _norm_room(self, room: str) -> str:
        try:
            return norm_room(room, max_len=self.config.max_room_name_len)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def _check_body(self, body: str) -> None:
        if self.config.max_body_chars and len(body) > int(self.config.max_body_chars):
            raise ValidationError(
                f"Message too long (max {self.config.max_body_chars} characters)."
            )

    # Membership

    async def _handle_subscribe(self, client: Client, ev: Subscribe) -> None:
        room = self._norm_room(ev.room)

        if client.state is ClientState.JOINED:
            if client.room == room:
                return
            await self._part(client)

        if ev.nickname is not None:
            nick = normalize_nick(ev.nickname, max_chars=self.config.nick_max_chars)
            if nick is not None:
                client.set_nick(nick)

        if client.room != room:
            client.clear_room_state()
        client.room = room
        client.state = ClientState.JOINING

        try:
            await self.admission.authenticate(room, client, None)
        except AuthenticationError as e:
            if str(e) == PRIVATE_CHANNEL:
                self.messages.notice(
                    client,
                    room,
                    "This channel is private.  Please type /password [channel password] to join",
                )
                self.messages.send(client, O_PRIVATE, room, {"room": room})
            else:
                self.messages.notice(client, room, str(e))
            return

        await self._subscribe_success(client, room)

    async def _handle_join_private(self, client: Client, ev: JoinPrivate) -> None:
        room = client.room
        if room is None or client.state is ClientState.LEFT:
            raise ValidationError("Subscribe to a room first.")
        if client.state is ClientState.JOINED:
            self.messages.notice(client, room, "You are already in this room.", log=False)
            return

        try:
            await self.admission.authenticate(room, client, ev.password)
        except AuthenticationError as e:
            self.stats.inc("joins_failed")
            if str(e) == INCORRECT_PASSWORD:
                self.messages.room_notice(
                    room,
                    f"{client.nick} just failed to join the room.",
                    cls=CLASS_IDENTITY,
                )
            self.messages.notice(client, room, str(e))
            self.log.info("JOIN refused cid=%s room=%s reason=%s", client.cid, room, e)
            return

        await self._subscribe_success(client, room)

    async def _subscribe_success(self, client: Client, room: str) -> None:
        self.registry.join(room, client)
        client.state = ClientState.JOINED
        self.stats.inc("joins")
        self.log.info("JOIN cid=%s nick=%r room=%s", client.cid, client.nick, room)

        try:
            watermark = await self.history.current_id(room)
            topic = await self.history.get_topic(room)
        except StoreError as e:
            self._store_failed(client, e, "join")
            watermark = None
            topic = self.registry.get_topic(room)
        else:
            if topic is not None:
                self.registry.set_topic(room, topic)

        # The client may have gone away while the store was answering.
        if not self.registry.is_member(room, client):
            return

        if watermark is not None:
            self.messages.send(client, O_CURRENT_ID, room, {"ID": watermark, "room": room})
        self.messages.send(
            client, O_TOPIC, room, self.messages.system_message(room, topic, log=False)
        )
        self.messages.room_notice(
            room,
            f"{client.nick} has joined the chat.",
            cls=CLASS_JOIN,
            client=client.to_public(),
            cid=client.cid,
        )
        self.messages.send(client, O_YOUR_CID, room, {"room": room, "cid": client.cid})
        self.messages.notice(client, room, f"Talking in channel '{room}'", log=False)
        self.presence.publish(room)

    async def _handle_unsubscribe(self, client: Client, ev: Unsubscribe) -> None:
        await self._part(client)

    async def _part(self, client: Client) -> None:
        room = client.room
        was_joined = client.state is ClientState.JOINED
        client.state = ClientState.LEFT
        if room is None:
            client.clear_room_state()
            return

        if was_joined and self.registry.leave(room, client):
            self.stats.inc("parts")
            self.log.info("PART cid=%s nick=%r room=%s", client.cid, client.nick, room)
            self.messages.room_notice(
                room,
                f"{client.nick} has left the chat.",
                cls=CLASS_PART,
                log=False,
                clientID=client.cid,
            )
            self.presence.publish(room)
        client.room = None
        client.clear_room_state()
        await self.admission.unauthenticate(room, client)

    async def _handle_make_public(self, client: Client, ev: MakePublic) -> None:
        room = client.room
        await self.admission.make_public(room, client)
        self.registry.set_visibility(room, VISIBILITY_PUBLIC)
        self.messages.notice(client, room, "This channel is now public.")

    async def _handle_make_private(self, client: Client, ev: MakePrivate) -> None:
        room = client.room
        await self.admission.make_private(room, client, ev.password)
        self.registry.set_visibility(room, VISIBILITY_PRIVATE)
        self.messages.notice(
            client, room, "This channel is now private.  Please remember your password."
        )

    # Identity

    async def _handle_nickname(self, client: Client, ev: Nickname) -> bool:
        room = client.room
        requested = strip_nick_command(ev.nickname)
        if not requested:
            raise ValidationError("You may not use the empty string as a nickname.")
        new = normalize_nick(requested, max_chars=self.config.nick_max_chars)
        if new is None:
            raise ValidationError("That nickname is not allowed.")

        prev = client.nick
        client.set_nick(new)
        self.log.info("NICK cid=%s room=%s %r -> %r", client.cid, room, prev, new)

        self.messages.room_notice(
            room,
            f"{prev} is now known as {new}",
            exclude=client,
            cls=CLASS_IDENTITY,
            log=False,
        )
        self.messages.notice(
            client, room, f"You are now known as {new}", cls=CLASS_IDENTITY, log=False
        )
        self.presence.publish(room)
        return True

    async def _handle_identify(self, client: Client, ev: Identify) -> None:
        room = client.room
        nick = client.nick
        try:
            ok = await self.identity.verify(room, nick, ev.password, client=client)
        except UnknownNickname:
            self.messages.notice(
                client, room, f"There's no registration on file for {nick}", cls=CLASS_IDENTITY
            )
            return

        if ok:
            self.messages.notice(
                client, room, f"You are now identified for {nick}", cls=CLASS_IDENTITY
            )
        else:
            self.stats.inc("identify_failed")
            self.messages.notice(client, room, f"Wrong password for {nick}", cls=CLASS_IDENTITY)
            self.messages.room_notice(
                room, f"{nick} just failed to identify", exclude=client, cls=CLASS_IDENTITY
            )
        self.presence.publish(room)

    async def _handle_register_nick(self, client: Client, ev: RegisterNick) -> None:
        room = client.room
        try:
            await self.identity.register(room, client.nick, ev.password, client=client)
        except NicknameTaken:
            self.messages.notice(client, room, "That nickname is already registered by somebody.")
            return

        self.stats.inc("registrations")
        self.messages.notice(
            client, room, "You have registered your nickname.  Please remember your password."
        )
        self.presence.publish(room)

    # Room activity

    async def _handle_topic(self, client: Client, ev: Topic) -> None:
        room = client.room
        topic = ev.topic.strip()
        self._check_body(topic)
        await self.history.set_topic(room, topic)
        self.registry.set_topic(room, topic)
        self.log.info("TOPIC cid=%s room=%s", client.cid, room)
        self.messages.to_room(room, O_TOPIC, self.messages.system_message(room, topic, log=False))

    async def _handle_history_request(self, client: Client, ev: HistoryRequest) -> None:
        room = client.room
        self.stats.inc("history_requests")
        for msg in await self.history.fetch_range(room, ev.request_range):
            self.messages.send(client, O_CHAT, room, msg)

    async def _handle_idle(self, client: Client, ev: Idle) -> None:
        self.idle.mark_idle(client.room, client)

    async def _handle_unidle(self, client: Client, ev: Unidle) -> None:
        self.idle.mark_unidle(client.room, client)

    async def _handle_private_message(self, client: Client, ev: PrivateMessage) -> None:
        self._check_body(ev.body)
        if self.private.route(client, client.room, ev.directed_at, ev.body):
            self.stats.inc("private_msgs")

    async def _handle_chat(self, client: Client, ev: Chat) -> None:
        if not ev.body:
            return
        self._check_body(ev.body)
        room = client.room
        msg = {
            "body": ev.body,
            "cID": client.cid,
            "color": client.color,
            "nickname": client.nick,
            "timestamp": now_ms(),
            "room": room,
        }
        stamped = await self.sequencer.publish(room, msg)
        self.stats.inc("msgs_sequenced")

        self.messages.to_room(room, O_CHAT, stamped, exclude=client)
        self.messages.send(client, O_CHAT, room, {**stamped, "you": True})
