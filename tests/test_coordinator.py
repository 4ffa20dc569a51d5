import pytest

from chatd.coordinator import GENERIC_FAILURE, ChannelCoordinator
from chatd.errors import StoreError
from chatd.events import (
    Chat,
    HistoryRequest,
    Identify,
    Idle,
    JoinPrivate,
    MakePrivate,
    Nickname,
    PrivateMessage,
    RegisterNick,
    Subscribe,
    Topic,
    Unidle,
    Unsubscribe,
)
from chatd.rooms import ClientState
from chatd.store import MemoryStore


@pytest.mark.asyncio
async def test_join_emits_in_order(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")

    assert alice.state is ClientState.JOINED
    assert transport.events("link-a") == [
        "chat:currentID",
        "topic",
        "chat",
        "chat:your_cid",
        "chat",
        "userlist",
    ]
    assert transport.to("link-a", "chat:currentID") == [{"ID": 0, "room": "lobby"}]
    assert transport.chat_lines("link-a") == [
        "alice has joined the chat.",
        "Talking in channel 'lobby'",
    ]
    assert transport.to("link-a", "chat:your_cid") == [{"room": "lobby", "cid": "a"}]


@pytest.mark.asyncio
async def test_second_join_is_announced_to_the_room(coordinator, transport, joiner) -> None:
    await joiner("a", "alice")
    transport.clear()
    await joiner("b", "bob")

    assert transport.events("link-a") == ["chat", "userlist"]
    joined = transport.to("link-a", "chat")[0]
    assert joined["body"] == "bob has joined the chat."
    assert joined["class"] == "join"
    assert joined["type"] == "SYSTEM"
    assert joined["nickname"] == "Server"
    assert joined["cid"] == "b"
    users = transport.to("link-a", "userlist")[0]["users"]
    assert sorted(u["nick"] for u in users) == ["alice", "bob"]


@pytest.mark.asyncio
async def test_room_names_are_normalized(coordinator, joiner) -> None:
    alice = await joiner("a", "alice", room="  Lobby ")
    assert alice.room == "lobby"
    assert coordinator.registry.is_member("lobby", alice)


@pytest.mark.asyncio
async def test_subscribe_applies_nickname(coordinator, transport) -> None:
    client = coordinator.new_client("a", "link-a")
    assert client.nick == "Anonymous"
    await coordinator.dispatch(client, Subscribe("lobby", "alice"))
    assert client.nick == "alice"


@pytest.mark.asyncio
async def test_subscribe_to_another_room_parts_the_first(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    await joiner("b", "bob")
    transport.clear()

    await coordinator.dispatch(alice, Subscribe("elsewhere"))

    assert alice.room == "elsewhere"
    assert "alice has left the chat." in transport.chat_lines("link-b")
    assert [c.nick for c in coordinator.registry.members("lobby")] == ["bob"]


@pytest.mark.asyncio
async def test_events_before_joining_are_rejected(coordinator, transport) -> None:
    client = coordinator.new_client("a", "link-a", nick="alice")
    await coordinator.dispatch(client, Chat("hello"))

    assert transport.chat_lines("link-a") == ["You are not in a room."]
    assert coordinator.registry.members("lobby") == []


@pytest.mark.asyncio
async def test_bad_raw_event_gets_notice(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    transport.clear()

    assert await coordinator.dispatch_raw(alice, "shutdown", {}) is None
    assert await coordinator.dispatch_raw(alice, "chat", {"body": 42}) is None

    lines = transport.chat_lines("link-a")
    assert len(lines) == 2
    assert all(line.startswith("Bad request:") for line in lines)
    assert coordinator.stats.get("envelopes_bad") == 2


@pytest.mark.asyncio
async def test_private_room_flow(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    await coordinator.dispatch(alice, MakePrivate("secret"))
    assert transport.chat_lines("link-a")[-1].startswith("This channel is now private.")
    transport.clear()

    bob = await joiner("b", "bob")
    assert bob.state is ClientState.JOINING
    assert transport.events("link-b") == ["chat", "private"]
    assert transport.chat_lines("link-b")[0].startswith("This channel is private.")
    assert transport.events("link-a") == []

    await coordinator.dispatch(bob, Chat("let me in"))
    assert transport.chat_lines("link-b")[-1] == "You are not in a room."

    transport.clear()
    await coordinator.dispatch(bob, JoinPrivate("wrong"))
    assert transport.chat_lines("link-a") == ["bob just failed to join the room."]
    assert transport.chat_lines("link-b") == ["Incorrect password."]
    assert bob.state is ClientState.JOINING

    await coordinator.dispatch(bob, JoinPrivate("secret"))
    assert bob.state is ClientState.JOINED
    assert coordinator.registry.is_member("lobby", bob)


@pytest.mark.asyncio
async def test_nickname_change(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    await joiner("b", "bob")
    alice.identified = True
    transport.clear()

    assert await coordinator.dispatch(alice, Nickname("/nick alicia")) is True

    assert alice.nick == "alicia"
    assert alice.identified is False
    assert transport.chat_lines("link-b") == ["alice is now known as alicia"]
    assert transport.chat_lines("link-a") == ["You are now known as alicia"]
    assert transport.events("link-b").count("userlist") == 1


@pytest.mark.asyncio
async def test_empty_nickname_rejected(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    transport.clear()

    assert await coordinator.dispatch(alice, Nickname("  ")) is None
    assert alice.nick == "alice"
    assert transport.chat_lines("link-a") == [
        "You may not use the empty string as a nickname."
    ]


@pytest.mark.asyncio
async def test_register_and_identify(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    await coordinator.dispatch(alice, RegisterNick("pw"))
    assert alice.identified is True
    assert transport.chat_lines("link-a")[-1].startswith("You have registered your nickname.")

    impostor = await joiner("b", "alice")
    transport.clear()
    await coordinator.dispatch(impostor, Identify("guess"))
    assert transport.chat_lines("link-b") == ["Wrong password for alice"]
    assert transport.chat_lines("link-a") == ["alice just failed to identify"]
    assert impostor.identified is False

    await coordinator.dispatch(impostor, RegisterNick("mine"))
    assert transport.chat_lines("link-b")[-1] == (
        "That nickname is already registered by somebody."
    )

    await coordinator.dispatch(impostor, Identify("pw"))
    assert transport.chat_lines("link-b")[-1] == "You are now identified for alice"
    assert impostor.identified is True


@pytest.mark.asyncio
async def test_identify_without_registration(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    transport.clear()
    await coordinator.dispatch(alice, Identify("pw"))
    assert transport.chat_lines("link-a") == ["There's no registration on file for alice"]


@pytest.mark.asyncio
async def test_idle_and_unidle_refresh_presence_once(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    await joiner("b", "bob")
    transport.clear()

    await coordinator.dispatch(alice, Idle())
    assert transport.events("link-b") == ["chat:idle", "userlist"]
    idle = transport.to("link-b", "chat:idle")[0]
    assert idle["cID"] == "a"
    users = {u["cid"]: u for u in transport.to("link-b", "userlist")[0]["users"]}
    assert users["a"]["idle"] is True
    assert users["a"]["idleSince"] == idle["idleSince"]

    transport.clear()
    await coordinator.dispatch(alice, Unidle())
    assert transport.events("link-b") == ["chat:unidle", "userlist"]
    users = {u["cid"]: u for u in transport.to("link-b", "userlist")[0]["users"]}
    assert users["a"]["idle"] is False
    assert "idleSince" not in users["a"]


@pytest.mark.asyncio
async def test_private_message_reaches_every_namesake(coordinator, transport, joiner) -> None:
    await joiner("a", "alice")
    await joiner("b1", "bob")
    await joiner("b2", "bob")
    await joiner("c", "carol")
    await joiner("x", "bob", room="elsewhere")
    alice = coordinator.registry.find_by_nickname("lobby", "alice")[0]
    transport.clear()

    await coordinator.dispatch(alice, PrivateMessage("psst", "bob"))

    for link in ("link-b1", "link-b2"):
        [msg] = transport.to(link, "private_message")
        assert msg["body"] == "psst"
        assert msg["directedAt"] == "bob"
        assert msg["nickname"] == "alice"
        assert msg["type"] == "private"
        assert "you" not in msg
    [echo] = transport.to("link-a", "private_message")
    assert echo["you"] is True
    assert transport.events("link-c") == []
    assert transport.events("link-x") == []
    assert coordinator.stats.get("private_msgs") == 1


@pytest.mark.asyncio
async def test_private_message_without_recipient(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    transport.clear()
    await coordinator.dispatch(alice, PrivateMessage("psst", "dave"))
    assert transport.events("link-a") == ["chat"]
    assert transport.chat_lines("link-a") == ["No one named dave is in this room."]
    assert coordinator.stats.get("private_msgs") == 0


@pytest.mark.asyncio
async def test_chat_is_sequenced_and_echoed(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    await joiner("b", "bob")
    transport.clear()

    await coordinator.dispatch(alice, Chat("one"))
    await coordinator.dispatch(alice, Chat("two"))
    await coordinator.dispatch(alice, Chat(""))

    seen = transport.to("link-b", "chat")
    assert [(m["ID"], m["body"]) for m in seen] == [(0, "one"), (1, "two")]
    assert all("you" not in m for m in seen)
    echoes = transport.to("link-a", "chat")
    assert [(m["ID"], m.get("you")) for m in echoes] == [(0, True), (1, True)]
    assert await coordinator.history.current_id("lobby") == 2


@pytest.mark.asyncio
async def test_long_chat_rejected(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    transport.clear()
    await coordinator.dispatch(alice, Chat("x" * (coordinator.config.max_body_chars + 1)))
    assert transport.chat_lines("link-a")[0].startswith("Message too long")
    assert await coordinator.history.current_id("lobby") == 0


@pytest.mark.asyncio
async def test_history_request_skips_missing_ids(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    await coordinator.dispatch(alice, Chat("one"))
    await coordinator.dispatch(alice, Chat("two"))
    bob = await joiner("b", "bob")
    transport.clear()

    await coordinator.dispatch(bob, HistoryRequest((0, 1, 5)))

    history = transport.to("link-b", "chat")
    assert [m["body"] for m in history] == ["one", "two"]
    assert transport.events("link-a") == []


@pytest.mark.asyncio
async def test_join_reports_watermark(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    await coordinator.dispatch(alice, Chat("one"))
    await joiner("b", "bob")
    assert transport.to("link-b", "chat:currentID") == [{"ID": 1, "room": "lobby"}]


@pytest.mark.asyncio
async def test_topic_is_stored_and_broadcast(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    await joiner("b", "bob")
    transport.clear()

    await coordinator.dispatch(alice, Topic("  plans  "))

    for link in ("link-a", "link-b"):
        [topic] = transport.to(link, "topic")
        assert topic["body"] == "plans"
    assert await coordinator.history.get_topic("lobby") == "plans"

    await joiner("c", "carol")
    assert transport.to("link-c", "topic")[0]["body"] == "plans"


@pytest.mark.asyncio
async def test_identification_does_not_follow_client_to_another_room(
    coordinator, transport, joiner
) -> None:
    owner = await joiner("o", "alice", room="b")
    await coordinator.dispatch(owner, RegisterNick("owner-pw"))
    await coordinator.dispatch(owner, Unsubscribe())

    impostor = await joiner("i", "alice", room="a")
    await coordinator.dispatch(impostor, RegisterNick("impostor-pw"))
    assert impostor.identified is True
    transport.clear()

    await coordinator.dispatch(impostor, Subscribe("b"))

    assert impostor.room == "b"
    assert impostor.state is ClientState.JOINED
    assert impostor.identified is False
    [users] = [u["users"] for u in transport.to("link-i", "userlist")]
    assert users == [impostor.to_public()]
    assert users[0]["identified"] is False


@pytest.mark.asyncio
async def test_idle_state_does_not_follow_client_to_another_room(
    coordinator, transport, joiner
) -> None:
    alice = await joiner("a", "alice")
    await coordinator.dispatch(alice, Idle())
    assert alice.idle is True

    await coordinator.dispatch(alice, Subscribe("elsewhere"))

    assert alice.idle is False
    assert alice.idle_since is None
    users = transport.to("link-a", "userlist")[-1]["users"]
    assert users[0]["idle"] is False
    assert "idleSince" not in users[0]


@pytest.mark.asyncio
async def test_rejoining_after_unsubscribe_starts_unidentified(
    coordinator, joiner
) -> None:
    alice = await joiner("a", "alice")
    await coordinator.dispatch(alice, RegisterNick("pw"))
    await coordinator.dispatch(alice, Unsubscribe())
    assert alice.identified is False

    await coordinator.dispatch(alice, Subscribe("lobby"))
    assert alice.state is ClientState.JOINED
    assert alice.identified is False


@pytest.mark.asyncio
async def test_unsubscribe_and_disconnect_announce_part(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    bob = await joiner("b", "bob")
    carol = await joiner("c", "carol")
    transport.clear()

    await coordinator.dispatch(alice, Unsubscribe())
    assert alice.state is ClientState.LEFT
    assert alice.room is None
    [part] = transport.to("link-b", "chat")
    assert part["body"] == "alice has left the chat."
    assert part["clientID"] == "a"
    assert part["class"] == "part"

    transport.clear()
    await coordinator.disconnect(bob)
    assert transport.chat_lines("link-c") == ["bob has left the chat."]
    assert [c.nick for c in coordinator.registry.members("lobby")] == ["carol"]
    assert coordinator.registry.members("lobby") == [carol]

    # A second disconnect is harmless.
    transport.clear()
    await coordinator.disconnect(bob)
    assert transport.sent == []


class BrokenCounterStore(MemoryStore):
    async def hincrby(self, key, field, amount=1):
        raise StoreError("connection refused")


class BrokenReadStore(MemoryStore):
    async def hget(self, key, field):
        raise StoreError("connection refused")


@pytest.mark.asyncio
async def test_store_failure_on_send_gets_generic_notice(cfg, transport) -> None:
    coordinator = ChannelCoordinator(cfg, store=BrokenCounterStore(), transport=transport)
    alice = coordinator.new_client("a", "link-a", nick="alice")
    bob = coordinator.new_client("b", "link-b", nick="bob")
    await coordinator.dispatch(alice, Subscribe("lobby"))
    await coordinator.dispatch(bob, Subscribe("lobby"))
    transport.clear()

    await coordinator.dispatch(alice, Chat("hello"))

    assert transport.chat_lines("link-a") == [GENERIC_FAILURE]
    assert transport.events("link-b") == []
    assert coordinator.stats.get("store_errors") == 1


@pytest.mark.asyncio
async def test_store_failure_on_join_still_admits(cfg, transport) -> None:
    coordinator = ChannelCoordinator(cfg, store=BrokenReadStore(), transport=transport)
    alice = coordinator.new_client("a", "link-a", nick="alice")

    await coordinator.dispatch(alice, Subscribe("lobby"))

    assert alice.state is ClientState.JOINED
    events = transport.events("link-a")
    assert "chat:currentID" not in events
    assert events[-1] == "userlist"
    assert transport.chat_lines("link-a")[0] == GENERIC_FAILURE


@pytest.mark.asyncio
async def test_failed_delivery_does_not_stop_fanout(coordinator, transport, joiner) -> None:
    alice = await joiner("a", "alice")
    await joiner("b", "bob")
    await joiner("c", "carol")
    transport.clear()

    real_deliver = transport.deliver

    def deliver(link, envelope):
        if link == "link-b":
            raise OSError("link closed")
        real_deliver(link, envelope)

    transport.deliver = deliver
    await coordinator.dispatch(alice, Chat("hi"))

    assert [m["body"] for m in transport.to("link-c", "chat")] == ["hi"]
    assert transport.to("link-a", "chat")[0]["you"] is True
