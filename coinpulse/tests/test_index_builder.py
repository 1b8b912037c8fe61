import asyncio
import json

import pytest

from coinpulse.services.index_builder import IndexBuilder, IndexRebuildService
from coinpulse.services.prefix_index import EntitySummary, PrefixIndex, PrefixIndexHandle


def _seed_pages(fake_redis, *pages):
    for n, page in enumerate(pages, start=1):
        fake_redis.store[f"page:{n}:data"] = json.dumps(page)


@pytest.mark.asyncio
async def test_fallback_to_database_when_no_pages(cache, keys, make_coin, make_repository):
    repository = make_repository(tracked=[
        make_coin("bitcoin", "Bitcoin", "btc"),
        make_coin("ethereum", "Ethereum", "eth"),
        make_coin("solana", "Solana", "sol"),
    ])
    builder = IndexBuilder(cache, repository, keys)

    index = await builder.rebuild()

    assert repository.tracked_calls == 1
    assert len(index) == 6
    assert index.frozen
    for name, symbol, coin_id in (("bit", "btc", "bitcoin"), ("eth", "eth", "ethereum"), ("sol", "sol", "solana")):
        assert coin_id in [s.id for s in index.search(name)]
        assert coin_id in [s.id for s in index.search(symbol)]


@pytest.mark.asyncio
async def test_builds_from_cached_pages(cache, keys, fake_redis, make_coin, make_repository):
    _seed_pages(
        fake_redis,
        [make_coin("bitcoin", "Bitcoin", "btc", rank=1)],
        [make_coin("dogecoin", "Dogecoin", "doge", rank=9)],
    )
    repository = make_repository(tracked=[make_coin("other", "Other", "oth")])

    index = await IndexBuilder(cache, repository, keys).rebuild()

    assert repository.tracked_calls == 0
    assert len(index) == 4
    assert [s.id for s in index.search("doge")] == ["dogecoin", "dogecoin"]
    assert index.search("oth") == []


@pytest.mark.asyncio
async def test_corrupt_page_skipped(cache, keys, fake_redis, make_coin, make_repository):
    _seed_pages(fake_redis, [make_coin("bitcoin", "Bitcoin", "btc", rank=1)])
    fake_redis.store["page:2:data"] = "{broken"
    fake_redis.store["page:3:data"] = json.dumps({"not": "a list"})

    index = await IndexBuilder(cache, make_repository(), keys).rebuild()

    assert [s.id for s in index.search("bit")] == ["bitcoin"]


@pytest.mark.asyncio
async def test_non_utf8_page_skipped(cache, keys, fake_redis, make_coin, make_repository):
    _seed_pages(fake_redis, [make_coin("bitcoin", "Bitcoin", "btc", rank=1)])
    fake_redis.store["page:2:data"] = b"\xff\xfe not utf-8"
    repository = make_repository(tracked=[make_coin("other", "Other", "oth")])

    index = await IndexBuilder(cache, repository, keys).rebuild()

    assert [s.id for s in index.search("bit")] == ["bitcoin"]
    assert repository.tracked_calls == 0


@pytest.mark.asyncio
async def test_unreadable_pages_fall_back(cache, keys, fake_redis, make_coin, make_repository):
    fake_redis.store["page:1:data"] = "{broken"
    repository = make_repository(tracked=[make_coin("bitcoin", "Bitcoin", "btc")])

    index = await IndexBuilder(cache, repository, keys).rebuild()

    assert repository.tracked_calls == 1
    assert len(index) == 2


@pytest.mark.asyncio
async def test_malformed_records_skipped(cache, keys, fake_redis, make_coin, make_repository):
    _seed_pages(fake_redis, [make_coin("bitcoin", "Bitcoin", "btc"), {"id": "x"}, "junk"])
    index = await IndexBuilder(cache, make_repository(), keys).rebuild()
    assert len(index) == 2


@pytest.mark.asyncio
async def test_rebuild_is_idempotent(cache, keys, fake_redis, make_coin, make_repository):
    _seed_pages(fake_redis, [make_coin("bitcoin", "Bitcoin", "btc"), make_coin("ethereum", "Ethereum", "eth")])
    builder = IndexBuilder(cache, make_repository(), keys)

    first = await builder.rebuild()
    second = await builder.rebuild()

    assert first is not second
    assert len(first) == len(second)
    for q in ("b", "e", "bitcoin", "eth"):
        assert first.search(q) == second.search(q)


@pytest.mark.asyncio
async def test_fallback_timeout_raises(cache, keys, make_repository):
    class _SlowRepository:
        async def list_tracked_coins(self, limit=5000):
            await asyncio.sleep(10)
            return []

    builder = IndexBuilder(cache, _SlowRepository(), keys, fallback_timeout_seconds=0.01)
    with pytest.raises(asyncio.TimeoutError):
        await builder.rebuild()


@pytest.mark.asyncio
async def test_failed_rebuild_keeps_previous_generation(cache, keys, fake_redis, make_coin, make_repository):
    _seed_pages(fake_redis, [make_coin("bitcoin", "Bitcoin", "btc")])
    handle = PrefixIndexHandle()
    service = IndexRebuildService(IndexBuilder(cache, make_repository(), keys), handle)

    assert await service.trigger() is True
    assert handle.generation == 1
    previous = handle.current

    fake_redis.down = True
    assert await service.trigger() is False
    assert handle.generation == 1
    assert handle.current is previous
    assert service.last_error is not None
    assert [s.id for s in handle.current.search("bit")] == ["bitcoin"]


class _GatedBuilder:
    """rebuild 在 gate 放行前一直挂起"""

    def __init__(self):
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.calls = 0

    async def rebuild(self):
        self.calls += 1
        self.started.set()
        await self.gate.wait()
        index = PrefixIndex()
        index.insert("Ethereum", EntitySummary(id="ethereum", name="Ethereum", symbol="eth"))
        return index.freeze()


@pytest.mark.asyncio
async def test_readers_see_old_generation_during_rebuild():
    old = PrefixIndex()
    old.insert("Bitcoin", EntitySummary(id="bitcoin", name="Bitcoin", symbol="btc"))
    handle = PrefixIndexHandle(old)
    builder = _GatedBuilder()
    service = IndexRebuildService(builder, handle)

    task = asyncio.create_task(service.trigger())
    await builder.started.wait()

    assert handle.current is old
    assert handle.current.search("eth") == []

    builder.gate.set()
    assert await task is True
    assert handle.generation == 2
    assert [s.id for s in handle.current.search("eth")] == ["ethereum"]


class _SlowRepository:
    """list_tracked_coins 在 gate 放行前一直挂起"""

    def __init__(self, tracked):
        self.tracked = tracked
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def list_tracked_coins(self, limit=5000):
        self.started.set()
        await self.gate.wait()
        return self.tracked[:limit]


@pytest.mark.asyncio
async def test_slow_source_rebuild_does_not_disturb_readers(cache, keys, make_coin):
    old = PrefixIndex()
    old.insert("Bitcoin", EntitySummary(id="bitcoin", name="Bitcoin", symbol="btc"))
    handle = PrefixIndexHandle(old)
    repository = _SlowRepository([make_coin("ethereum", "Ethereum", "eth")])
    service = IndexRebuildService(
        IndexBuilder(cache, repository, keys, fallback_timeout_seconds=5),
        handle,
    )

    task = asyncio.create_task(service.trigger())
    await repository.started.wait()

    for _ in range(3):
        assert handle.current is old
        assert [s.id for s in handle.current.search("bit")] == ["bitcoin"]
        assert handle.current.search("eth") == []
        await asyncio.sleep(0)

    repository.gate.set()
    assert await task is True
    assert handle.generation == 2
    assert [s.id for s in handle.current.search("eth")] == ["ethereum", "ethereum"]
    assert handle.current.search("bit") == []


@pytest.mark.asyncio
async def test_overlapping_trigger_skipped():
    handle = PrefixIndexHandle()
    builder = _GatedBuilder()
    service = IndexRebuildService(builder, handle)

    first = asyncio.create_task(service.trigger())
    await builder.started.wait()
    assert service.running

    assert await service.trigger() is False
    assert service.skipped_triggers == 1

    builder.gate.set()
    assert await first is True
    assert builder.calls == 1
    assert handle.generation == 1


@pytest.mark.asyncio
async def test_service_builds_on_start(cache, keys, fake_redis, make_coin, make_repository):
    _seed_pages(fake_redis, [make_coin("bitcoin", "Bitcoin", "btc")])
    handle = PrefixIndexHandle()
    service = IndexRebuildService(IndexBuilder(cache, make_repository(), keys), handle, interval_seconds=60)

    await service.start()
    for _ in range(50):
        if handle.generation:
            break
        await asyncio.sleep(0.01)
    await service.stop()

    assert handle.generation == 1
