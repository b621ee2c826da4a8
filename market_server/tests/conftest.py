import asyncio
import fnmatch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from market_server.services import ServiceContainer
from market_server.services import auth_service


def _bound(raw):
    raw = str(raw)
    if raw == "-inf":
        return float("-inf"), False
    if raw == "+inf" or raw == "inf":
        return float("inf"), False
    if raw.startswith("("):
        return float(raw[1:]), True
    return float(raw), False


def _slice(items, start, stop):
    n = len(items)
    if start < 0:
        start = max(n + start, 0)
    if stop < 0:
        stop = n + stop
    if start > stop or start >= n:
        return []
    return items[start:stop + 1]


class _FakePipeline:
    def __init__(self, redis, transaction):
        self._redis = redis
        self.transaction = transaction
        self._commands = []

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self
        return _queue

    async def execute(self):
        results = []
        commands, self._commands = self._commands, []
        for name, args, kwargs in commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        return results


class FakeRedis:
    """内存版 Redis, 只实现服务用到的命令子集"""

    def __init__(self):
        self.zsets: dict[str, dict[str, float]] = {}
        self.strings: dict[str, str] = {}
        self.sets: dict[str, set] = {}
        self.lists: dict[str, list] = {}
        self.ttls: dict[str, int] = {}
        self.failures = {}
        self.delays = {}
        self.calls = []
        self._scans = {}

    def fail(self, command, when=lambda *args: True):
        self.failures[command] = when

    async def _enter(self, command, *args):
        self.calls.append((command, args))
        delay = self.delays.get(command)
        if delay:
            await asyncio.sleep(delay)
        check = self.failures.get(command)
        if check is not None and check(*args):
            raise RedisConnectionError(f"{command} unavailable")

    def _sorted(self, key):
        return sorted(self.zsets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]))

    def pipeline(self, transaction=True):
        return _FakePipeline(self, transaction)

    async def ping(self):
        await self._enter("ping")
        return True

    # sorted sets ---------------------------------------------------------

    async def zadd(self, key, mapping):
        await self._enter("zadd", key)
        zset = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if member not in zset:
                added += 1
            zset[member] = float(score)
        return added

    async def zrem(self, key, *members):
        await self._enter("zrem", key)
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        return removed

    async def zremrangebyscore(self, key, min, max):
        await self._enter("zremrangebyscore", key)
        lo, lo_open = _bound(min)
        hi, hi_open = _bound(max)
        zset = self.zsets.get(key, {})
        doomed = [
            m for m, s in zset.items()
            if (s > lo if lo_open else s >= lo) and (s < hi if hi_open else s <= hi)
        ]
        for member in doomed:
            del zset[member]
        return len(doomed)

    async def zremrangebyrank(self, key, start, stop):
        await self._enter("zremrangebyrank", key)
        doomed = _slice(self._sorted(key), start, stop)
        for member, _ in doomed:
            del self.zsets[key][member]
        return len(doomed)

    async def zrange(self, key, start, end):
        await self._enter("zrange", key)
        return [member for member, _ in _slice(self._sorted(key), start, end)]

    async def zrevrange(self, key, start, end):
        await self._enter("zrevrange", key)
        ordered = list(reversed(self._sorted(key)))
        return [member for member, _ in _slice(ordered, start, end)]

    async def zscan(self, key, cursor=0, match=None, count=None):
        await self._enter("zscan", key, cursor)
        # 游标基于开始扫描时的快照, 扫描期间一直存在的 member 都会被返回
        if cursor == 0:
            self._scans[key] = [member for member, _ in self._sorted(key)]
        snapshot = self._scans.get(key, [])
        count = count or 10
        zset = self.zsets.get(key, {})
        page = [(m, zset[m]) for m in snapshot[cursor:cursor + count] if m in zset]
        next_cursor = cursor + count if cursor + count < len(snapshot) else 0
        return next_cursor, page

    async def zcard(self, key):
        await self._enter("zcard", key)
        return len(self.zsets.get(key, {}))

    # keys ----------------------------------------------------------------

    async def get(self, key):
        await self._enter("get", key)
        return self.strings.get(key)

    async def set(self, key, value, ex=None, nx=False):
        await self._enter("set", key)
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def exists(self, *keys):
        await self._enter("exists", *keys)
        stores = (self.strings, self.zsets, self.sets, self.lists)
        return sum(1 for key in keys if any(key in store for store in stores))

    async def delete(self, *keys):
        await self._enter("delete", *keys)
        removed = 0
        for key in keys:
            found = False
            for store in (self.strings, self.zsets, self.sets, self.lists):
                if store.pop(key, None) is not None:
                    found = True
            self.ttls.pop(key, None)
            removed += int(found)
        return removed

    async def incr(self, key):
        await self._enter("incr", key)
        value = int(self.strings.get(key, "0")) + 1
        self.strings[key] = str(value)
        return value

    async def expire(self, key, seconds, nx=False):
        await self._enter("expire", key)
        if nx and key in self.ttls:
            return False
        self.ttls[key] = seconds
        return True

    async def scan_iter(self, match=None, count=None):
        await self._enter("scan_iter", match)
        for key in list(self.strings):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    # sets ----------------------------------------------------------------

    async def sadd(self, key, *members):
        await self._enter("sadd", key)
        store = self.sets.setdefault(key, set())
        before = len(store)
        store.update(members)
        return len(store) - before

    async def srem(self, key, *members):
        await self._enter("srem", key)
        store = self.sets.get(key, set())
        removed = len(store & set(members))
        store.difference_update(members)
        return removed

    async def smembers(self, key):
        await self._enter("smembers", key)
        return set(self.sets.get(key, set()))

    # lists ---------------------------------------------------------------

    async def lpush(self, key, *values):
        await self._enter("lpush", key)
        store = self.lists.setdefault(key, [])
        for value in values:
            store.insert(0, value)
        return len(store)

    async def ltrim(self, key, start, stop):
        await self._enter("ltrim", key)
        self.lists[key] = _slice(self.lists.get(key, []), start, stop)
        return True

    async def lrange(self, key, start, stop):
        await self._enter("lrange", key)
        return _slice(self.lists.get(key, []), start, stop)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fast_hashing(monkeypatch):
    monkeypatch.setattr(auth_service, "PBKDF2_ITERATIONS", 1000)


@pytest.fixture(autouse=True)
def reset_container():
    yield
    ServiceContainer.reset()


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()
