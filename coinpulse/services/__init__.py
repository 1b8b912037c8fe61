"""
服务容器 - 统一管理所有服务实例
使用单例模式，避免重复创建，便于依赖注入和测试
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ServiceContainer:
    """
    服务容器 - 依赖注入容器
    管理所有服务的单例实例
    """

    _keys: Optional['CacheKeyScheme'] = None
    _cache: Optional['KeyedCache'] = None
    _repository: Optional['CoinRepository'] = None
    _fetcher: Optional['PriceFetcher'] = None
    _populator: Optional['CachePopulator'] = None
    _index_handle: Optional['PrefixIndexHandle'] = None
    _index_service: Optional['IndexRebuildService'] = None
    _search_service: Optional['SearchService'] = None
    _market_data_service: Optional['MarketDataService'] = None

    @classmethod
    def initialize(cls, redis_client, settings=None):
        """
        初始化所有服务
        在应用启动时调用 (数据库连接建立之后)
        """
        logger.info("🔧 初始化服务容器...")

        # 延迟导入避免循环依赖
        from ..config import get_settings
        from ..db.redis_schema import CacheKeyScheme
        from .cache_populator import CachePopulator
        from .coin_repository import CoinRepository
        from .index_builder import IndexBuilder, IndexRebuildService
        from .keyed_cache import KeyedCache
        from .market_data_service import MarketDataService
        from .prefix_index import PrefixIndexHandle
        from .price_fetcher import PriceFetcher, counts_as_provider_failure
        from .resilience import CircuitBreaker, RetryPolicy
        from .search_service import SearchService

        settings = settings or get_settings()

        cls._keys = CacheKeyScheme(
            prefix=settings.CACHE_KEY_PREFIX,
            coin_update_channel=settings.COIN_UPDATE_CHANNEL,
        )
        cls._cache = KeyedCache(redis_client)
        cls._repository = CoinRepository()
        cls._fetcher = PriceFetcher(
            base_url=settings.COINGECKO_BASE_URL,
            api_key=settings.COINGECKO_API_KEY,
            vs_currency=settings.VS_CURRENCY,
            per_page=settings.PAGE_SIZE,
            batch_size=settings.WATCHLIST_BATCH_SIZE,
            batch_pause_seconds=settings.WATCHLIST_BATCH_PAUSE_SECONDS,
            retry=RetryPolicy(
                max_attempts=settings.PROVIDER_RETRY_ATTEMPTS,
                base_delay=settings.PROVIDER_RETRY_BASE_DELAY,
            ),
            breaker=CircuitBreaker(
                "coingecko",
                failure_threshold=settings.BREAKER_FAILURE_THRESHOLD,
                reset_timeout=settings.BREAKER_RESET_SECONDS,
                call_timeout=settings.PROVIDER_TIMEOUT_SECONDS,
                is_failure=counts_as_provider_failure,
            ),
        )
        cls._populator = CachePopulator(
            cls._cache,
            cls._keys,
            page_size=settings.PAGE_SIZE,
            entity_ttl_seconds=settings.ENTITY_TTL_SECONDS,
            page_ttl_seconds=settings.PAGE_TTL_SECONDS,
        )
        cls._index_handle = PrefixIndexHandle()
        cls._index_service = IndexRebuildService(
            IndexBuilder(
                cls._cache,
                cls._repository,
                cls._keys,
                fallback_timeout_seconds=settings.FALLBACK_QUERY_TIMEOUT_SECONDS,
                fallback_limit=settings.FALLBACK_QUERY_LIMIT,
            ),
            cls._index_handle,
            interval_seconds=settings.INDEX_REBUILD_INTERVAL_SECONDS,
        )
        cls._search_service = SearchService(
            cls._index_handle,
            default_limit=settings.SEARCH_DEFAULT_LIMIT,
            max_limit=settings.SEARCH_MAX_LIMIT,
        )
        cls._market_data_service = MarketDataService(
            cls._fetcher,
            cls._populator,
            cls._repository,
            cls._cache,
            cls._keys,
            top_pages=settings.TOP_PAGES,
            top_interval_seconds=settings.TOP_COINS_INTERVAL_SECONDS,
            watchlist_interval_seconds=settings.WATCHLIST_INTERVAL_SECONDS,
            watchlist_ttl_seconds=settings.WATCHLIST_TTL_SECONDS,
        )

        logger.info("✅ 服务容器初始化完成")

    @classmethod
    def _require(cls, value, name: str):
        if value is None:
            raise RuntimeError(f"{name} 未初始化，请先调用 ServiceContainer.initialize()")
        return value

    @classmethod
    def get_keys(cls):
        """获取缓存键命名规范"""
        if cls._keys is None:
            from ..db.redis_schema import CacheKeyScheme
            cls._keys = CacheKeyScheme()
        return cls._keys

    @classmethod
    def get_cache(cls):
        """获取缓存"""
        return cls._require(cls._cache, "KeyedCache")

    @classmethod
    def get_repository(cls):
        """获取持久化仓库"""
        if cls._repository is None:
            from .coin_repository import CoinRepository
            cls._repository = CoinRepository()
        return cls._repository

    @classmethod
    def get_price_fetcher(cls):
        """获取行情源客户端"""
        return cls._require(cls._fetcher, "PriceFetcher")

    @classmethod
    def get_index_handle(cls):
        """获取当前索引代"""
        if cls._index_handle is None:
            from .prefix_index import PrefixIndexHandle
            cls._index_handle = PrefixIndexHandle()
        return cls._index_handle

    @classmethod
    def get_index_service(cls):
        """获取索引重建服务"""
        return cls._require(cls._index_service, "IndexRebuildService")

    @classmethod
    def get_search_service(cls):
        """获取搜索服务"""
        if cls._search_service is None:
            from .search_service import SearchService
            cls._search_service = SearchService(cls.get_index_handle())
        return cls._search_service

    @classmethod
    def get_market_data_service(cls):
        """获取行情采集服务"""
        return cls._require(cls._market_data_service, "MarketDataService")

    @classmethod
    def reset(cls):
        """
        重置服务容器
        主要用于测试
        """
        cls._keys = None
        cls._cache = None
        cls._repository = None
        cls._fetcher = None
        cls._populator = None
        cls._index_handle = None
        cls._index_service = None
        cls._search_service = None
        cls._market_data_service = None
