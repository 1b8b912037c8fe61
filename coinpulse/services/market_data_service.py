import asyncio
import logging
import time
from typing import Optional

from ..db.redis_schema import CacheKeyScheme
from .cache_populator import CachePopulator, PopulateResult
from .coin_repository import CoinRepository
from .keyed_cache import KeyedCache
from .price_fetcher import PriceFetcher

logger = logging.getLogger(__name__)


class MarketDataService:
    """
    行情采集 worker
    - top coins: 每 2 分钟拉取前两页, 写缓存 + 广播 + 落库
    - watchlist: 每 5 分钟回填缓存里缺失的 watchlist 币种
    """

    def __init__(
        self,
        fetcher: PriceFetcher,
        populator: CachePopulator,
        repository: CoinRepository,
        cache: KeyedCache,
        keys: CacheKeyScheme,
        top_pages: int = 2,
        top_interval_seconds: float = 120.0,
        watchlist_interval_seconds: float = 300.0,
        watchlist_ttl_seconds: int = 600,
    ):
        self.fetcher = fetcher
        self.populator = populator
        self.repository = repository
        self.cache = cache
        self.keys = keys
        self.top_pages = top_pages
        self.top_interval_seconds = top_interval_seconds
        self.watchlist_interval_seconds = watchlist_interval_seconds
        self.watchlist_ttl_seconds = watchlist_ttl_seconds

        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self.last_top_cycle_ts: Optional[float] = None
        self.last_watchlist_cycle_ts: Optional[float] = None

    async def start(self) -> None:
        if any(not t.done() for t in self._tasks):
            return
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._loop("top-coins", self.run_top_coins_cycle, self.top_interval_seconds)),
            asyncio.create_task(self._loop("watchlist", self.run_watchlist_cycle, self.watchlist_interval_seconds)),
        ]

    async def stop(self) -> None:
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        await self.fetcher.close()

    async def _loop(self, name: str, cycle, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                await cycle()
            except Exception:
                logger.exception(f"MarketDataService {name} cycle error")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def run_top_coins_cycle(self) -> PopulateResult:
        start_ts = time.time()
        logger.info("WORKER: starting top coins data update")

        coins = await self.fetcher.fetch_top_coins(pages=self.top_pages)
        result = await self.populator.populate(coins)

        # 落库失败不影响缓存, 下一轮还会再写
        try:
            await self.repository.upsert_coins(coins)
            saved = await self.repository.save_price_snapshots(coins)
            logger.info(f"WORKER: saved {saved} price snapshots")
        except Exception as e:
            logger.error(f"WORKER: error persisting coins/price snapshots: {e}")

        self.last_top_cycle_ts = time.time()
        elapsed_ms = (self.last_top_cycle_ts - start_ts) * 1000
        logger.info(f"WORKER: finished top coins update: coins={len(coins)} time={elapsed_ms:.1f}ms")
        return result

    async def run_watchlist_cycle(self) -> PopulateResult:
        logger.info("WORKER: starting watchlist coin data update")
        coin_ids = await self.repository.list_watchlisted_coin_ids()
        if not coin_ids:
            logger.info("WORKER: no watchlisted coins to update")
            self.last_watchlist_cycle_ts = time.time()
            return PopulateResult()

        keys = [self.keys.entity_key(c) for c in coin_ids]
        raws = await self.cache.get_many_raw(keys)
        missing = [coin_id for coin_id, raw in zip(coin_ids, raws) if raw is None]
        if not missing:
            logger.info("WORKER: all watchlisted coins are already in the cache")
            self.last_watchlist_cycle_ts = time.time()
            return PopulateResult()

        logger.info(f"WORKER: found {len(missing)} watchlist coins missing from cache")
        coins = await self.fetcher.fetch_coins_by_ids(missing)
        result = await self.populator.cache_entities(coins, ttl_seconds=self.watchlist_ttl_seconds)
        logger.info(f"WORKER: cached {result.entities_written} watchlist coins")
        self.last_watchlist_cycle_ts = time.time()
        return result
