import pytest

from notifications import NotificationQueue


@pytest.mark.asyncio
async def test_queue_and_list_newest_first(any_store):
    queue = NotificationQueue(any_store, per_user=3)
    ids = [(await queue.queue("alice", {"type": f"n{i}"}))["id"] for i in range(4)]

    listed = await queue.list("alice", 10)
    assert [n["id"] for n in listed] == list(reversed(ids))[:3]
    assert all(n["read"] is False and n["userId"] == "alice" for n in listed)


@pytest.mark.asyncio
async def test_mark_read(any_store):
    queue = NotificationQueue(any_store)
    first = await queue.queue("alice", {"type": "invitation"})
    await queue.queue("alice", {"type": "task_assigned"})

    assert await queue.mark_read("alice", first["id"]) is True
    assert await queue.mark_read("alice", "missing") is False
    unread = await queue.unread("alice")
    assert [n["type"] for n in unread] == ["task_assigned"]


@pytest.mark.asyncio
async def test_other_users_are_isolated(store):
    queue = NotificationQueue(store)
    await queue.queue("alice", {"type": "invitation"})
    assert await queue.list("bob") == []
