"""
行情数据 API (只读缓存, 单币种未命中时从行情源回填)
"""
import asyncio
import logging

import aiohttp
from fastapi import APIRouter, Depends, HTTPException, Query

from ..config import get_settings
from ..db.redis_schema import CacheKeyScheme
from ..services import ServiceContainer
from ..services.keyed_cache import CacheUnavailableError, KeyedCache
from ..services.price_fetcher import PriceFetcher, ProviderError
from ..services.resilience import CircuitOpenError

router = APIRouter(prefix="/coins", tags=["Coins"])
logger = logging.getLogger(__name__)


def get_cache() -> KeyedCache:
    return ServiceContainer.get_cache()


def get_keys() -> CacheKeyScheme:
    return ServiceContainer.get_keys()


def get_price_fetcher() -> PriceFetcher:
    return ServiceContainer.get_price_fetcher()


def get_entity_ttl() -> int:
    return get_settings().ENTITY_TTL_SECONDS


@router.get("")
async def get_paginated_coins(
    page: int = Query(1, description="页码，1 或 2"),
    cache: KeyedCache = Depends(get_cache),
    keys: CacheKeyScheme = Depends(get_keys),
):
    """首页分页列表, 直接读分页快照"""
    if page < 1 or page > 2:
        raise HTTPException(status_code=400, detail="Page must be 1 or 2")

    try:
        coins = await cache.get_json(keys.page_key(page))
    except CacheUnavailableError as e:
        logger.error(f"page {page} read failed: {e}")
        raise HTTPException(status_code=503, detail="Cache unavailable")

    if coins is None:
        # worker 还没跑完第一轮
        raise HTTPException(
            status_code=503,
            detail="Coin data is not available yet. Please try again in a moment.",
        )
    return {"page": page, "count": len(coins), "items": coins}


@router.get("/{coin_id}")
async def get_coin_by_id(
    coin_id: str,
    cache: KeyedCache = Depends(get_cache),
    keys: CacheKeyScheme = Depends(get_keys),
    fetcher: PriceFetcher = Depends(get_price_fetcher),
    ttl_seconds: int = Depends(get_entity_ttl),
):
    """单币种行情: 缓存命中直接返回, 未命中从行情源拉取并回填"""
    coin_id = coin_id.strip().lower()
    if not coin_id:
        raise HTTPException(status_code=400, detail="Missing coin id")

    try:
        coin = await cache.get_or_load(
            keys.entity_key(coin_id),
            lambda: fetcher.fetch_coin(coin_id),
            ttl_seconds=ttl_seconds,
        )
    except CircuitOpenError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (ProviderError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning(f"backfill for {coin_id} failed: {e}")
        raise HTTPException(status_code=502, detail="Market data provider error")

    if coin is None:
        raise HTTPException(status_code=404, detail="Coin not found or data is being updated.")
    return coin
