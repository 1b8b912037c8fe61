# 数据库模块
from .connection import (
    DatabaseManager,
    get_db,
    get_pg_pool,
    get_redis
)
from .redis_schema import CacheKeyScheme

__all__ = [
    'CacheKeyScheme',
    'DatabaseManager',
    'get_db',
    'get_pg_pool',
    'get_redis'
]
