"""
KeyedCache - Redis 上的 JSON 键值缓存
读穿透 (read-through) 契约: 未命中是正常状态, 不是错误
"""
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CacheUnavailableError(RuntimeError):
    """Redis 不可达或命令执行失败"""


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _decode(raw) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        # 非 UTF-8 字节替换为 U+FFFD, 交给 JSON 解析判为损坏值
        return raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        return raw
    return None


class KeyedCache:
    def __init__(self, client: redis.Redis):
        self._redis = client

    @property
    def client(self) -> redis.Redis:
        return self._redis

    async def get_raw(self, key: str) -> Optional[str]:
        try:
            return _decode(await self._redis.get(key))
        except RedisError as e:
            raise CacheUnavailableError(f"GET {key} failed: {e}") from e

    async def get_json(self, key: str) -> Any:
        raw = await self.get_raw(key)
        return self._loads(key, raw)

    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        try:
            if ttl_seconds:
                await self._redis.set(key, _dumps(value), ex=int(ttl_seconds))
            else:
                await self._redis.set(key, _dumps(value))
        except RedisError as e:
            raise CacheUnavailableError(f"SET {key} failed: {e}") from e

    async def get_many_raw(self, keys: list[str]) -> list[Optional[str]]:
        if not keys:
            return []
        try:
            raws = await self._redis.mget(keys)
        except RedisError as e:
            raise CacheUnavailableError(f"MGET ({len(keys)} keys) failed: {e}") from e
        return [_decode(r) for r in raws]

    async def get_many_json(self, keys: list[str]) -> dict[str, Any]:
        """批量读取, 返回 key -> 值 (未命中或损坏为 None)"""
        raws = await self.get_many_raw(keys)
        return {key: self._loads(key, raw) for key, raw in zip(keys, raws)}

    async def scan_keys(self, pattern: str, count: int = 200) -> list[str]:
        keys: list[str] = []
        try:
            async for key in self._redis.scan_iter(match=pattern, count=count):
                keys.append(_decode(key))
        except RedisError as e:
            raise CacheUnavailableError(f"SCAN {pattern} failed: {e}") from e
        return keys

    async def publish(self, channel: str, message: Any) -> int:
        """发布消息, 返回收到消息的订阅者数量"""
        payload = message if isinstance(message, str) else _dumps(message)
        try:
            return int(await self._redis.publish(channel, payload) or 0)
        except RedisError as e:
            raise CacheUnavailableError(f"PUBLISH {channel} failed: {e}") from e

    def pipeline(self, transaction: bool = True):
        return self._redis.pipeline(transaction=transaction)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl_seconds: Optional[int] = None,
    ) -> Any:
        """
        读穿透: 命中直接返回; 未命中调用 loader, 非 None 结果写回缓存
        loader 的异常向上抛出, 回填写入失败只记录日志
        """
        try:
            hit = await self.get_json(key)
        except CacheUnavailableError as e:
            logger.warning(f"cache read failed, loading directly: {e}")
            hit = None
        if hit is not None:
            return hit

        value = await loader()
        if value is None:
            return None

        try:
            await self.set_json(key, value, ttl_seconds)
        except CacheUnavailableError as e:
            logger.warning(f"cache backfill failed for {key}: {e}")
        return value

    @staticmethod
    def _loads(key: str, raw: Optional[str]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"corrupt JSON in cache key {key}, treating as miss")
            return None
