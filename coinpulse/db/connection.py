"""
数据库连接层
提供 PostgreSQL 和 Redis 的统一连接管理
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional, AsyncGenerator
from dotenv import load_dotenv

# PostgreSQL 异步驱动
import asyncpg

# Redis 异步驱动
import redis.asyncio as redis

from ..config import Settings, get_settings

load_dotenv()
logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    数据库连接管理器
    负责 PostgreSQL 和 Redis 连接池的生命周期管理
    """

    _instance: Optional['DatabaseManager'] = None

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()

        # PostgreSQL 配置
        self.pg_host = settings.POSTGRES_HOST
        self.pg_port = settings.POSTGRES_PORT
        self.pg_user = settings.POSTGRES_USER
        self.pg_password = settings.POSTGRES_PASSWORD
        self.pg_database = settings.POSTGRES_DB

        # Redis 配置
        self.redis_host = settings.REDIS_HOST
        self.redis_port = settings.REDIS_PORT
        self.redis_password = settings.REDIS_PASSWORD or None
        self.redis_db = settings.REDIS_DB

        self._init_retries = 5
        self._init_retry_delay = 1.0
        self._init_retry_max_delay = 5.0

        # 连接池
        self._pg_pool: Optional[asyncpg.Pool] = None
        self._redis_client: Optional[redis.Redis] = None

    @classmethod
    def get_instance(cls) -> 'DatabaseManager':
        """获取单例实例"""
        if cls._instance is None:
            cls._instance = DatabaseManager()
        return cls._instance

    async def initialize(self):
        """
        初始化所有数据库连接
        连接失败时指数退避重试，超过次数后抛出异常（启动失败）
        """
        logger.info("正在初始化数据库连接...")
        await self._with_retries("PostgreSQL", self._connect_postgres)
        await self._with_retries("Redis", self._connect_redis)
        logger.info("🎉 所有数据库连接初始化完成")

    async def _with_retries(self, name: str, connect) -> None:
        delay = self._init_retry_delay
        for attempt in range(1, self._init_retries + 1):
            try:
                await connect()
                return
            except Exception as e:
                if attempt >= self._init_retries:
                    logger.error(f"❌ {name} 连接失败: {e}")
                    raise
                logger.warning(f"{name} 连接失败，{delay:.1f}s 后重试 ({attempt}/{self._init_retries})")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._init_retry_max_delay)

    async def _connect_postgres(self) -> None:
        self._pg_pool = await asyncpg.create_pool(
            host=self.pg_host,
            port=self.pg_port,
            user=self.pg_user,
            password=self.pg_password,
            database=self.pg_database,
            min_size=2,
            max_size=10,
            command_timeout=30,
            init=self._init_connection,
        )
        async with self._pg_pool.acquire() as conn:
            version = await conn.fetchval("SELECT version()")
        logger.info(f"✅ PostgreSQL 连接池已创建 ({self.pg_host}:{self.pg_port})")
        logger.debug(f"PostgreSQL 版本: {version}")

    async def _connect_redis(self) -> None:
        self._redis_client = self._build_redis_client()
        await self._redis_client.ping()
        info = await self._redis_client.info('memory')
        used_memory = info.get('used_memory_human', 'Unknown')
        logger.info(
            f"✅ Redis 连接已建立 ({self.redis_host}:{self.redis_port}) | "
            f"内存使用: {used_memory}"
        )

    def _build_redis_client(self) -> redis.Redis:
        return redis.Redis(
            host=self.redis_host,
            port=self.redis_port,
            password=self.redis_password,
            db=self.redis_db,
            decode_responses=True,
            encoding_errors="replace",
            socket_timeout=5,
            socket_connect_timeout=5,
            max_connections=100,
        )

    async def _init_connection(self, conn):
        """PostgreSQL 连接初始化回调 - 设置语句超时"""
        try:
            await conn.execute("SET statement_timeout = '30000'")
        except Exception as e:
            logger.warning(f"设置连接参数失败: {e}")

    async def close(self):
        """关闭所有连接"""
        logger.info("正在关闭数据库连接...")

        if self._pg_pool:
            await self._pg_pool.close()
            self._pg_pool = None
            logger.info("PostgreSQL 连接池已关闭")

        if self._redis_client:
            await self._redis_client.aclose()
            self._redis_client = None
            logger.info("Redis 连接已关闭")

    @property
    def pg_pool(self) -> asyncpg.Pool:
        """获取 PostgreSQL 连接池"""
        if self._pg_pool is None:
            raise RuntimeError("PostgreSQL 连接池未初始化，请先调用 initialize()")
        return self._pg_pool

    @property
    def redis(self) -> redis.Redis:
        """获取 Redis 客户端"""
        if self._redis_client is None:
            raise RuntimeError("Redis 连接未初始化，请先调用 initialize()")
        return self._redis_client

    @asynccontextmanager
    async def pg_connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """获取 PostgreSQL 连接的上下文管理器"""
        async with self.pg_pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def pg_transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """获取 PostgreSQL 事务连接的上下文管理器"""
        async with self.pg_pool.acquire() as conn:
            async with conn.transaction():
                yield conn


# ============================================
# 便捷函数
# ============================================

async def get_db() -> DatabaseManager:
    """获取数据库管理器实例"""
    db = DatabaseManager.get_instance()
    if db._pg_pool is None:
        await db.initialize()
    return db


async def get_pg_pool() -> asyncpg.Pool:
    """直接获取 PostgreSQL 连接池"""
    db = await get_db()
    return db.pg_pool


async def get_redis() -> redis.Redis:
    """直接获取 Redis 客户端"""
    db = DatabaseManager.get_instance()
    if db._redis_client is None:
        db._redis_client = db._build_redis_client()
        await db._redis_client.ping()
    return db.redis


# ============================================
# 测试连接
# ============================================

async def test_connections():
    """测试所有数据库连接"""
    db = DatabaseManager.get_instance()

    try:
        await db.initialize()

        async with db.pg_connection() as conn:
            result = await conn.fetchval("SELECT current_database()")
            logger.info(f"PostgreSQL 测试成功，当前数据库: {result}")

        await db.redis.set("coinpulse:ping", "pong", ex=10)
        value = await db.redis.get("coinpulse:ping")
        logger.info(f"Redis 测试成功，读取值: {value}")

        print("✅ 所有数据库连接测试通过!")

    except Exception as e:
        print(f"❌ 数据库连接测试失败: {e}")
        raise
    finally:
        await db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(test_connections())
