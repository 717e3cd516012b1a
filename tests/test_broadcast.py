import random

import pytest

from broadcast import RoomBroadcaster
from events import EventBus, MembershipChanged
from presence import PresenceRegistry


@pytest.fixture
def registry(any_store):
    return PresenceRegistry.from_store(any_store)


@pytest.fixture
def broadcaster(registry):
    return RoomBroadcaster(registry)


def attach(broadcaster, make_socket, *connection_ids):
    sockets = {}
    for conn_id in connection_ids:
        sockets[conn_id] = make_socket()
        broadcaster.attach(conn_id, sockets[conn_id])
    return sockets


@pytest.mark.asyncio
async def test_joining_twice_keeps_membership_size(broadcaster, registry, make_socket):
    attach(broadcaster, make_socket, "a1")
    await broadcaster.join_room("team-7", "alice", "a1")
    await broadcaster.join_room("team-7", "alice", "a1")
    assert await registry.room_size("team-7") == 1
    assert broadcaster.subscribers_of("team-7") == {"a1"}


@pytest.mark.asyncio
async def test_second_tab_is_subscribed_but_not_counted(broadcaster, registry, make_socket):
    sockets = attach(broadcaster, make_socket, "a1", "a2")
    await broadcaster.join_room("team-7", "alice", "a1")
    await broadcaster.join_room("team-7", "alice", "a2")

    assert await registry.room_size("team-7") == 1
    assert sockets["a2"].last("occupancyChanged") == {"roomId": "team-7", "count": 1}

    await broadcaster.leave_room("team-7", "alice", "a1")
    assert await registry.room_members("team-7") == {"alice"}
    assert sockets["a2"].last("occupancyChanged")["count"] == 1

    await broadcaster.leave_room("team-7", "alice", "a2")
    assert await registry.room_size("team-7") == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(5))
async def test_occupancy_after_joins_and_leaves(broadcaster, make_socket, seed):
    users = [f"user{i}" for i in range(6)]
    leavers = users[:2]
    sockets = attach(broadcaster, make_socket, "observer", *(f"{u}-conn" for u in users))
    await broadcaster.join_room("team-7", "watcher", "observer")

    operations = [("join", u) for u in users]
    rng = random.Random(seed)
    rng.shuffle(operations)
    # A leave is only valid after the same user's join
    for user in leavers:
        index = operations.index(("join", user))
        operations.insert(rng.randint(index + 1, len(operations)), ("leave", user))

    for action, user in operations:
        if action == "join":
            await broadcaster.join_room("team-7", user, f"{user}-conn")
        else:
            await broadcaster.leave_room("team-7", user, f"{user}-conn")

    # N joined plus the watcher, M left
    expected = len(users) - len(leavers) + 1
    assert sockets["observer"].last("occupancyChanged") == {"roomId": "team-7", "count": expected}


@pytest.mark.asyncio
async def test_broadcast_to_room_can_exclude_sender(broadcaster, make_socket):
    sockets = attach(broadcaster, make_socket, "a1", "b1", "c1")
    for user, conn in (("alice", "a1"), ("bob", "b1")):
        await broadcaster.join_room("team-7", user, conn)
    await broadcaster.join_room("team-8", "carol", "c1")

    delivered = await broadcaster.broadcast_to_room("team-7", "newMessage", {"content": "hi"},
                                                    exclude_connection_id="a1")
    assert delivered == 1
    assert sockets["b1"].events("newMessage") == [{"content": "hi"}]
    assert sockets["a1"].events("newMessage") == []
    assert sockets["c1"].events("newMessage") == []


@pytest.mark.asyncio
async def test_notify_user_reaches_every_connection(broadcaster, registry, make_socket):
    sockets = attach(broadcaster, make_socket, "a1", "a2", "b1")
    for user, conn in (("alice", "a1"), ("alice", "a2"), ("bob", "b1")):
        await registry.add_connection(user, conn)
    await broadcaster.join_room("team-7", "alice", "a1")

    assert await broadcaster.notify_user("alice", "personalNotification", {"type": "invite"}) == 2
    assert sockets["a1"].events("personalNotification") == [{"type": "invite"}]
    assert sockets["a2"].events("personalNotification") == [{"type": "invite"}]
    assert sockets["b1"].events("personalNotification") == []


@pytest.mark.asyncio
async def test_failing_transport_does_not_block_others(broadcaster, make_socket):
    healthy = make_socket()
    broken = make_socket(fail=True)
    broadcaster.attach("a1", broken)
    broadcaster.attach("b1", healthy)
    await broadcaster.join_room("team-7", "alice", "a1")
    await broadcaster.join_room("team-7", "bob", "b1")

    assert await broadcaster.broadcast_to_room("team-7", "userTyping", {"userId": "carol"}) == 1
    assert healthy.events("userTyping") == [{"userId": "carol"}]


@pytest.mark.asyncio
async def test_detach_drops_all_subscriptions(broadcaster, make_socket):
    attach(broadcaster, make_socket, "a1")
    await broadcaster.join_room("team-7", "alice", "a1")
    broadcaster.detach("a1")
    assert broadcaster.subscribers_of("team-7") == set()
    assert await broadcaster.send("a1", "ping", {}) is False


@pytest.mark.asyncio
async def test_membership_events_are_emitted(registry, make_socket):
    bus = EventBus()
    seen = []

    async def record(event):
        seen.append((event.room_id, event.user_id, event.joined, event.reason))

    bus.subscribe(MembershipChanged, record)
    broadcaster = RoomBroadcaster(registry, bus)
    broadcaster.attach("a1", make_socket())

    await broadcaster.join_room("team-7", "alice", "a1")
    await broadcaster.leave_room("team-7", "alice", "a1", reason="disconnect")
    assert seen == [("team-7", "alice", True, "explicit"), ("team-7", "alice", False, "disconnect")]


@pytest.mark.asyncio
async def test_event_bus_isolates_failing_handlers():
    bus = EventBus()
    calls = []

    async def broken(event):
        raise RuntimeError("boom")

    async def working(event):
        calls.append(event)

    bus.subscribe(MembershipChanged, broken)
    bus.subscribe(MembershipChanged, working)
    event = MembershipChanged("team-7", "alice", "a1", joined=True)
    assert await bus.emit(event) == 1
    assert calls == [event]

