"""
测试公共夹具: 内存版 Redis / PostgreSQL 连接池替身
"""
import fnmatch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from coinpulse.db.redis_schema import CacheKeyScheme
from coinpulse.services import ServiceContainer
from coinpulse.services.keyed_cache import KeyedCache


class FakePipeline:
    def __init__(self, owner: "FakeRedis", transaction: bool):
        self._owner = owner
        self.transaction = transaction
        self._queued = []

    def set(self, key, value, ex=None):
        self._queued.append((key, value, ex))
        return self

    async def execute(self, raise_on_error=True):
        owner = self._owner
        if owner.down:
            raise RedisConnectionError("connection refused")
        owner.events.append(("exec", len(self._queued)))
        replies = []
        for key, value, ex in self._queued:
            if key in owner.fail_keys:
                err = ResponseError(f"OOM command not allowed for {key}")
                if raise_on_error:
                    raise err
                replies.append(err)
                continue
            owner._write(key, value, ex)
            replies.append(True)
        self._queued = []
        return replies


class FakeRedis:
    """只实现测试用到的命令; 所有写入和发布按顺序记录在 events"""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.events = []
        self.published = []
        self.fail_keys = set()
        self.fail_publish = False
        self.down = False
        self.subscribers = 1

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    def _write(self, key, value, ex):
        self.store[key] = value
        if ex:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        self.events.append(("set", key))

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self._write(key, value, ex)
        return True

    async def mget(self, keys):
        self._check()
        return [self.store.get(k) for k in keys]

    async def scan_iter(self, match=None, count=None):
        self._check()
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def publish(self, channel, message):
        self._check()
        if self.fail_publish:
            raise RedisConnectionError("publish failed")
        self.published.append((channel, message))
        self.events.append(("publish", channel))
        return self.subscribers

    def pipeline(self, transaction=True):
        return FakePipeline(self, transaction)


class DummyRepository:
    """CoinRepository 替身"""

    def __init__(self, tracked=None, watchlist=None):
        self.tracked = list(tracked or [])
        self.watchlist = list(watchlist or [])
        self.tracked_calls = 0
        self.upserted = []
        self.snapshots = []
        self.fail_persist = False

    async def list_tracked_coins(self, limit=5000):
        self.tracked_calls += 1
        return self.tracked[:limit]

    async def upsert_coins(self, records):
        if self.fail_persist:
            raise RuntimeError("db down")
        self.upserted.extend(records)
        return len(records)

    async def save_price_snapshots(self, records, captured_at=None):
        if self.fail_persist:
            raise RuntimeError("db down")
        self.snapshots.extend(records)
        return len(records)

    async def list_watchlisted_coin_ids(self):
        return list(self.watchlist)


def coin(coin_id, name, symbol, rank=None, **extra):
    record = {"id": coin_id, "name": name, "symbol": symbol, "market_cap_rank": rank}
    record.update(extra)
    return record


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return KeyedCache(fake_redis)


@pytest.fixture
def keys():
    return CacheKeyScheme()


@pytest.fixture(autouse=True)
def _reset_container():
    ServiceContainer.reset()
    yield
    ServiceContainer.reset()


@pytest.fixture
def make_coin():
    return coin


@pytest.fixture
def make_repository():
    return DummyRepository
