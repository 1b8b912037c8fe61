"""
搜索索引重建
数据源: Redis 分页快照 (page:*:data), 没有快照时回退到 PostgreSQL
每个币种按名称和代码各插入一次, 名称前缀和 ticker 前缀都能命中
"""
import asyncio
import json
import logging
import time
from typing import Any, Optional

from ..db.redis_schema import CacheKeyScheme
from .coin_repository import CoinRepository
from .keyed_cache import KeyedCache
from .prefix_index import EntitySummary, PrefixIndex, PrefixIndexHandle

logger = logging.getLogger(__name__)


class IndexBuilder:
    def __init__(
        self,
        cache: KeyedCache,
        repository: CoinRepository,
        keys: CacheKeyScheme,
        fallback_timeout_seconds: float = 10.0,
        fallback_limit: int = 5000,
    ):
        self.cache = cache
        self.repository = repository
        self.keys = keys
        self.fallback_timeout_seconds = fallback_timeout_seconds
        self.fallback_limit = fallback_limit

    async def rebuild(self) -> PrefixIndex:
        """
        构建全新的一代索引并冻结返回, 不触碰已发布的旧索引
        数据源整体不可读时抛出异常, 由调用方保留旧索引
        """
        start_ts = time.time()
        records, source = await self._load_records()

        index = PrefixIndex()
        coins = 0
        for record in records:
            summary = self._summary(record)
            if summary is None:
                continue
            index.insert(summary.name, summary)
            index.insert(summary.symbol, summary)
            coins += 1
        index.freeze()

        elapsed_ms = (time.time() - start_ts) * 1000
        logger.info(
            f"search index built from {source}: coins={coins} entries={len(index)} "
            f"nodes={index.node_count} time={elapsed_ms:.1f}ms"
        )
        return index

    async def _load_records(self) -> tuple[list[dict[str, Any]], str]:
        page_keys = await self.cache.scan_keys(self.keys.page_pattern)
        page_keys = sorted(
            (k for k in page_keys if self.keys.page_number(k) is not None),
            key=self.keys.page_number,
        )

        if page_keys:
            raws = await self.cache.get_many_raw(page_keys)
            records: list[dict[str, Any]] = []
            readable = 0
            for key, raw in zip(page_keys, raws):
                page = self._parse_page(key, raw)
                if page is None:
                    continue
                readable += 1
                records.extend(page)
            if readable:
                return records, f"{readable} cached pages"
            logger.warning(f"none of {len(page_keys)} cached pages were readable, falling back to database")
        else:
            logger.warning("No cached pages found in Redis to build search index, falling back to database")

        rows = await asyncio.wait_for(
            self.repository.list_tracked_coins(limit=self.fallback_limit),
            timeout=self.fallback_timeout_seconds,
        )
        return rows, "database"

    @staticmethod
    def _parse_page(key: str, raw: Optional[str]) -> Optional[list]:
        if raw is None:
            logger.warning(f"page snapshot {key} disappeared before read, skipping")
            return None
        try:
            page = json.loads(raw)
        except ValueError as e:
            logger.error(f"page snapshot {key} is not valid JSON, skipping: {e}")
            return None
        if not isinstance(page, list):
            logger.error(f"page snapshot {key} is not a JSON array, skipping")
            return None
        return page

    @staticmethod
    def _summary(record: Any) -> Optional[EntitySummary]:
        if not isinstance(record, dict):
            logger.warning(f"skipping non-object coin record: {str(record)[:80]}")
            return None
        if not record.get("id") or not record.get("name") or not record.get("symbol"):
            logger.warning(f"skipping coin record missing id/name/symbol: {str(record)[:120]}")
            return None
        return EntitySummary.from_record(record)


class IndexRebuildService:
    """
    启动时立即重建一次, 之后按固定周期重建
    同一时间只允许一个重建在跑, 重叠的触发直接跳过
    """

    def __init__(
        self,
        builder: IndexBuilder,
        handle: PrefixIndexHandle,
        interval_seconds: float = 600.0,
    ):
        self.builder = builder
        self.handle = handle
        self.interval_seconds = interval_seconds
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.last_error: Optional[str] = None
        self.skipped_triggers = 0

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def trigger(self) -> bool:
        """执行一次重建; 已有重建在跑时返回 False"""
        if self._lock.locked():
            self.skipped_triggers += 1
            logger.info("search index rebuild already in progress, skipping trigger")
            return False

        async with self._lock:
            try:
                index = await self.builder.rebuild()
            except Exception as e:
                self.last_error = repr(e)
                logger.error(
                    f"search index rebuild failed, keeping generation {self.handle.generation}: {e!r}",
                    exc_info=True,
                )
                return False
            generation = self.handle.publish(index)
            self.last_error = None
            logger.info(f"search index generation {generation} published ({len(index)} entries)")
            return True

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.trigger()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
