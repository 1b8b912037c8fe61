"""
PostgreSQL 持久化: 币种元数据、价格快照、watchlist
索引重建在没有任何分页快照缓存时回退到 coins 表
"""
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import asyncpg

from ..db import get_pg_pool

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS coins (
        coin_id VARCHAR(128) PRIMARY KEY,
        name VARCHAR(256) NOT NULL,
        symbol VARCHAR(64) NOT NULL,
        image TEXT,
        market_cap_rank INTEGER,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS price_snapshots (
        id BIGSERIAL PRIMARY KEY,
        coin_id VARCHAR(128) NOT NULL,
        price DOUBLE PRECISION NOT NULL,
        market_cap DOUBLE PRECISION,
        volume_24h DOUBLE PRECISION,
        captured_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_price_snapshots_coin_time ON price_snapshots (coin_id, captured_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS watchlists (
        id BIGSERIAL PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        coin_id VARCHAR(128) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, coin_id)
    )
    """,
)


def _float_or_none(v) -> Optional[float]:
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _int_or_none(v) -> Optional[int]:
    if v is None:
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


class CoinRepository:
    def __init__(self, pool_getter: Callable[[], Awaitable[asyncpg.Pool]] = get_pg_pool):
        self._pool_getter = pool_getter

    async def ensure_schema(self) -> None:
        pool = await self._pool_getter()
        async with pool.acquire() as conn:
            for stmt in SCHEMA_STATEMENTS:
                await conn.execute(stmt)

    async def list_tracked_coins(self, limit: int = 5000) -> list[dict[str, Any]]:
        """回退查询: 所有已知币种的 id/name/symbol/image"""
        pool = await self._pool_getter()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT coin_id, name, symbol, image
                FROM coins
                ORDER BY market_cap_rank NULLS LAST, coin_id
                LIMIT $1
                """,
                int(limit),
            )
        return [
            {"id": r["coin_id"], "name": r["name"], "symbol": r["symbol"], "image": r["image"]}
            for r in rows
        ]

    async def upsert_coins(self, records: list[dict[str, Any]]) -> int:
        rows = [
            (
                str(r["id"]),
                str(r["name"]),
                str(r["symbol"]),
                r.get("image"),
                _int_or_none(r.get("market_cap_rank")),
            )
            for r in records
            if r.get("id") and r.get("name") and r.get("symbol")
        ]
        if not rows:
            return 0
        pool = await self._pool_getter()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO coins (coin_id, name, symbol, image, market_cap_rank, updated_at)
                VALUES ($1, $2, $3, $4, $5, NOW())
                ON CONFLICT (coin_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    symbol = EXCLUDED.symbol,
                    image = EXCLUDED.image,
                    market_cap_rank = EXCLUDED.market_cap_rank,
                    updated_at = NOW()
                """,
                rows,
            )
        return len(rows)

    async def save_price_snapshots(
        self,
        records: list[dict[str, Any]],
        captured_at: Optional[datetime] = None,
    ) -> int:
        """同一批次使用同一个时间戳; 没有价格的记录跳过"""
        captured_at = captured_at or datetime.now(timezone.utc)
        rows = []
        for r in records:
            price = _float_or_none(r.get("current_price"))
            if not r.get("id") or price is None:
                continue
            rows.append((
                str(r["id"]),
                price,
                _float_or_none(r.get("market_cap")),
                _float_or_none(r.get("total_volume")),
                captured_at,
            ))
        if not rows:
            logger.warning("no price snapshots to save")
            return 0
        pool = await self._pool_getter()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO price_snapshots (coin_id, price, market_cap, volume_24h, captured_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                rows,
            )
        return len(rows)

    async def list_watchlisted_coin_ids(self) -> list[str]:
        pool = await self._pool_getter()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT DISTINCT coin_id FROM watchlists ORDER BY coin_id")
        return [r["coin_id"] for r in rows]
