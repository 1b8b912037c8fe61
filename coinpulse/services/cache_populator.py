"""
行情写缓存 + 变更广播
一轮 top coins 数据 -> 两个分页快照 + 每币种键 (同一个 MULTI/EXEC) -> 逐币种 PUBLISH
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from redis.exceptions import RedisError

from ..db.redis_schema import CacheKeyScheme
from .keyed_cache import CacheUnavailableError, KeyedCache

logger = logging.getLogger(__name__)

_UNRANKED = 9999


class CacheWriteError(RuntimeError):
    """分页快照写入失败, 本轮不广播"""


@dataclass
class PopulateResult:
    entities_written: int = 0
    pages_written: int = 0
    published: int = 0
    subscribers_reached: int = 0
    failed_ids: list[str] = field(default_factory=list)


def rank_of(record: dict[str, Any]) -> int:
    rank = record.get("market_cap_rank")
    try:
        return int(rank) if rank is not None else _UNRANKED
    except (TypeError, ValueError):
        return _UNRANKED


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _with_ids(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out = []
    for record in records or []:
        if isinstance(record, dict) and record.get("id"):
            out.append(record)
        else:
            logger.warning(f"skipping coin record without id: {str(record)[:120]}")
    return out


class CachePopulator:
    def __init__(
        self,
        cache: KeyedCache,
        keys: CacheKeyScheme,
        page_size: int = 250,
        entity_ttl_seconds: int = 300,
        page_ttl_seconds: int = 0,
    ):
        self.cache = cache
        self.keys = keys
        self.page_size = max(1, int(page_size))
        self.entity_ttl_seconds = entity_ttl_seconds
        self.page_ttl_seconds = page_ttl_seconds

    def build_pages(self, records: list[dict[str, Any]]) -> tuple[list[dict], list[dict]]:
        ranked = sorted(records, key=rank_of)
        return ranked[:self.page_size], ranked[self.page_size:self.page_size * 2]

    async def populate(self, records: list[dict[str, Any]]) -> PopulateResult:
        """
        写入 page:1:data / page:2:data 和 coin:<id>, 写完后逐币种广播
        页面键失败 -> CacheWriteError; 单个币种键失败 -> 记录并跳过广播
        """
        result = PopulateResult()
        records = _with_ids(records)
        if not records:
            logger.warning("populate called with no coin data, nothing to cache")
            return result

        page1, page2 = self.build_pages(records)
        page_keys = [self.keys.page_key(1), self.keys.page_key(2)]

        pipe = self.cache.pipeline(transaction=True)
        for key, page in zip(page_keys, (page1, page2)):
            if self.page_ttl_seconds:
                pipe.set(key, _dumps(page), ex=self.page_ttl_seconds)
            else:
                pipe.set(key, _dumps(page))
        entity_ids = self._queue_entities(pipe, records, self.entity_ttl_seconds)

        replies = await self._execute(pipe)

        page_errors = [r for r in replies[:len(page_keys)] if isinstance(r, Exception)]
        if page_errors:
            raise CacheWriteError(f"page snapshot write failed: {page_errors[0]!r}")
        result.pages_written = len(page_keys)

        written = self._collect_written(records, entity_ids, replies[len(page_keys):], result)
        result.entities_written = len(written)
        logger.info(
            f"cached {result.entities_written} coins and {result.pages_written} page snapshots "
            f"(page1={len(page1)} page2={len(page2)})"
        )

        await self._publish(written, result)
        return result

    async def cache_entities(
        self,
        records: list[dict[str, Any]],
        ttl_seconds: Optional[int] = None,
        notify: bool = False,
    ) -> PopulateResult:
        """只写每币种键 (watchlist 回填), 不动分页快照"""
        result = PopulateResult()
        records = _with_ids(records)
        if not records:
            return result

        pipe = self.cache.pipeline(transaction=True)
        entity_ids = self._queue_entities(pipe, records, ttl_seconds or self.entity_ttl_seconds)
        replies = await self._execute(pipe)

        written = self._collect_written(records, entity_ids, replies, result)
        result.entities_written = len(written)
        if notify:
            await self._publish(written, result)
        return result

    def _queue_entities(self, pipe, records: list[dict[str, Any]], ttl_seconds: int) -> list[str]:
        ids: list[str] = []
        for record in records:
            coin_id = str(record["id"])
            pipe.set(self.keys.entity_key(coin_id), _dumps(record), ex=int(ttl_seconds))
            ids.append(coin_id)
        return ids

    async def _execute(self, pipe) -> list:
        try:
            return await pipe.execute(raise_on_error=False)
        except RedisError as e:
            raise CacheUnavailableError(f"cache pipeline failed: {e}") from e

    def _collect_written(
        self,
        records: list[dict[str, Any]],
        entity_ids: list[str],
        replies: list,
        result: PopulateResult,
    ) -> list[dict[str, Any]]:
        written: list[dict[str, Any]] = []
        for record, coin_id, reply in zip(records, entity_ids, replies):
            if isinstance(reply, Exception):
                logger.error(f"cache write failed for {self.keys.entity_key(coin_id)}: {reply!r}")
                result.failed_ids.append(coin_id)
                continue
            written.append(record)
        return written

    async def _publish(self, records: list[dict[str, Any]], result: PopulateResult) -> None:
        channel = self.keys.coin_update_channel
        if not records:
            return

        replies = await asyncio.gather(
            *[self.cache.publish(channel, {"coinId": r["id"], "data": r}) for r in records],
            return_exceptions=True,
        )
        errors: list[BaseException] = []
        for reply in replies:
            if isinstance(reply, BaseException):
                errors.append(reply)
                continue
            result.published += 1
            result.subscribers_reached += int(reply or 0)

        if errors:
            logger.error(
                f"WS-PUB: {len(errors)}/{len(records)} publishes to '{channel}' failed: {errors[0]!r}"
            )
        logger.info(
            f"WS-PUB: published updates for {result.published} coins to "
            f"{result.subscribers_reached} subscribers on channel '{channel}'"
        )
