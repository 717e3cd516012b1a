import asyncio
import fnmatch
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from backend import SharedStore
from directory import InMemoryMessageStore, InMemoryTeamDirectory, InMemoryUserDirectory
from services import build_services


class FakeRedis:
    """Async stand-in for redis.asyncio.Redis with decode_responses=True.

    Set ``fail`` to make every command raise ConnectionError, or ``delay`` to
    make every command sleep first. ``advance`` moves a fake clock and drops
    expired keys. ``hooks`` maps (command, key) to a coroutine function that
    runs once, just before that command mutates that key.
    """

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.expires_at = {}
        self.now = 0.0
        self.hooks = {}
        self.fail = False
        self.delay = 0.0
        self.calls = 0

    def advance(self, seconds):
        self.now += seconds
        for key, deadline in list(self.expires_at.items()):
            if deadline <= self.now:
                self._drop(key)

    def _drop(self, key):
        self.data.pop(key, None)
        self.ttls.pop(key, None)
        self.expires_at.pop(key, None)

    async def _run_hook(self, command, key):
        hook = self.hooks.pop((command, key), None)
        if hook is not None:
            await hook()

    async def _check(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def ping(self):
        await self._check()
        return True

    async def get(self, key):
        await self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        await self._check()
        self.data[key] = value
        if ex:
            self.ttls[key] = ex
            self.expires_at[key] = self.now + ex
        return True

    async def delete(self, *keys):
        await self._check()
        count = 0
        for key in keys:
            if key in self.data:
                self._drop(key)
                count += 1
        return count

    async def expire(self, key, seconds):
        await self._check()
        if key not in self.data:
            return False
        self.ttls[key] = seconds
        self.expires_at[key] = self.now + seconds
        return True

    async def sadd(self, key, *members):
        await self._check()
        current = self.data.setdefault(key, set())
        added = len(set(members) - current)
        current.update(members)
        return added

    async def srem(self, key, *members):
        await self._check()
        await self._run_hook("srem", key)
        current = self.data.get(key, set())
        removed = len(current & set(members))
        current.difference_update(members)
        if not current:
            self._drop(key)
        return removed

    async def smembers(self, key):
        await self._check()
        return set(self.data.get(key, set()))

    async def scard(self, key):
        await self._check()
        return len(self.data.get(key, set()))

    async def lpush(self, key, *values):
        await self._check()
        current = self.data.setdefault(key, [])
        for value in values:
            current.insert(0, value)
        return len(current)

    async def ltrim(self, key, start, end):
        await self._check()
        current = self.data.get(key, [])
        self.data[key] = current[start:self._stop(current, end)]
        return True

    async def lrange(self, key, start, end):
        await self._check()
        current = self.data.get(key, [])
        return list(current[start:self._stop(current, end)])

    async def lset(self, key, index, value):
        await self._check()
        self.data[key][index] = value
        return True

    async def incr(self, key):
        await self._check()
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def scan_iter(self, match=None):
        await self._check()
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        return None

    @staticmethod
    def _stop(items, end):
        return len(items) + end + 1 if end < 0 else end + 1


class FakeWebSocket:
    def __init__(self, fail=False):
        self.frames = []
        self.fail = fail

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(json.loads(text))

    def events(self, name):
        return [frame["data"] for frame in self.frames if frame["event"] == name]

    def last(self, name):
        matching = self.events(name)
        return matching[-1] if matching else None

    def clear(self):
        self.frames.clear()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return SharedStore(fake_redis, timeout=0.5, reprobe_interval=0.0)


@pytest.fixture(params=["store_up", "store_down"])
def any_store(request, fake_redis):
    """Runs a test once against a healthy store and once against an unreachable one."""
    fake_redis.fail = request.param == "store_down"
    return SharedStore(fake_redis, timeout=0.5, reprobe_interval=0.0)


@pytest.fixture
def teams():
    directory = InMemoryTeamDirectory()
    directory.add("team-7", members=["alice", "bob", "carol"], admin="alice",
                  stats={"totalTasks": 4, "completedTasks": 1})
    directory.add("team-8", members=["alice", "bob"], admin="bob")
    return directory


@pytest.fixture
def users():
    directory = InMemoryUserDirectory()
    for user_id in ("alice", "bob", "carol", "dave"):
        directory.add(user_id, name=user_id.title())
    return directory


@pytest.fixture
def services(store, users, teams):
    return build_services(store=store, users=users, teams=teams, messages=InMemoryMessageStore(), recent_size=5)


@pytest.fixture
def make_socket():
    return FakeWebSocket


@pytest.fixture
def make_redis():
    return FakeRedis
