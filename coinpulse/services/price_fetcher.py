"""
行情源客户端 (CoinGecko /coins/markets)
- top N 币种: 并发拉取多页
- watchlist 币种: 按 id 分批拉取
所有请求都经过重试 + 熔断
"""
import asyncio
import logging
from typing import Any, Optional

import aiohttp

from .resilience import CircuitBreaker, RetryPolicy, resilient_call

logger = logging.getLogger(__name__)

TOP_PRICE_CHANGE_WINDOWS = "1h,24h,7d"
WATCHLIST_PRICE_CHANGE_WINDOWS = "1h,24h,7d,14d,30d,200d,1y"
REQUIRED_FIELDS = ("id", "name", "symbol")


class ProviderError(RuntimeError):
    """行情源返回非 2xx 或无法解析的响应"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def is_retryable_error(exc: BaseException) -> bool:
    """网络错误、超时、429、5xx 可重试"""
    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, ProviderError):
        return exc.status is None or exc.status == 429 or exc.status >= 500
    return False


def counts_as_provider_failure(exc: BaseException) -> bool:
    """4xx (429 除外) 是请求本身的问题, 不计入熔断"""
    if isinstance(exc, ProviderError) and exc.status is not None:
        return exc.status == 429 or exc.status >= 500
    return True


def _valid_records(rows: Any, source: str) -> list[dict[str, Any]]:
    if not isinstance(rows, list):
        raise ProviderError(f"{source}: expected JSON array, got {type(rows).__name__}")
    out: list[dict[str, Any]] = []
    for row in rows:
        if not isinstance(row, dict) or any(not row.get(f) for f in REQUIRED_FIELDS):
            logger.warning(f"{source}: dropping malformed record {str(row)[:120]}")
            continue
        out.append(row)
    return out


class PriceFetcher:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        vs_currency: str = "usd",
        per_page: int = 250,
        batch_size: int = 50,
        batch_pause_seconds: float = 2.0,
        retry: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.vs_currency = vs_currency
        self.per_page = per_page
        self.batch_size = max(1, batch_size)
        self.batch_pause_seconds = batch_pause_seconds
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreaker(
            "market-data-provider",
            is_failure=counts_as_provider_failure,
        )
        self._session = session
        self._owns_session = session is None

    async def fetch_top_coins(self, pages: int = 2) -> list[dict[str, Any]]:
        """并发拉取前 pages 页, 按页序拼接"""
        params = {
            "vs_currency": self.vs_currency,
            "price_change_percentage": TOP_PRICE_CHANGE_WINDOWS,
            "per_page": self.per_page,
        }
        tasks = [
            asyncio.create_task(self._get({**params, "page": page}))
            for page in range(1, pages + 1)
        ]
        try:
            responses = await asyncio.gather(*tasks)
        except BaseException:
            # 任一页失败, 取消其余仍在进行的请求
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        coins: list[dict[str, Any]] = []
        for page, rows in enumerate(responses, start=1):
            coins.extend(_valid_records(rows, f"markets page {page}"))
        logger.info(f"fetched {len(coins)} top coins ({pages} pages)")
        return coins

    async def fetch_coins_by_ids(self, coin_ids: list[str]) -> list[dict[str, Any]]:
        """按 id 分批拉取, 批次之间暂停以遵守限流"""
        ids = [c for c in dict.fromkeys(coin_ids) if c]
        coins: list[dict[str, Any]] = []
        for start in range(0, len(ids), self.batch_size):
            batch = ids[start:start + self.batch_size]
            rows = await self._get({
                "vs_currency": self.vs_currency,
                "ids": ",".join(batch),
                "price_change_percentage": WATCHLIST_PRICE_CHANGE_WINDOWS,
            })
            records = _valid_records(rows, f"markets ids batch@{start}")
            if not records:
                logger.info(f"no data returned for ids batch: {','.join(batch)}")
            coins.extend(records)
            if start + self.batch_size < len(ids) and self.batch_pause_seconds > 0:
                await asyncio.sleep(self.batch_pause_seconds)
        return coins

    async def fetch_coin(self, coin_id: str) -> Optional[dict[str, Any]]:
        rows = await self.fetch_coins_by_ids([coin_id])
        for row in rows:
            if row.get("id") == coin_id:
                return row
        return None

    async def _get(self, params: dict[str, Any]) -> Any:
        return await resilient_call(
            self._request,
            params,
            retry=self.retry,
            breaker=self.breaker,
            is_retryable=is_retryable_error,
            description=f"GET markets page={params.get('page', '-')}",
        )

    async def _request(self, params: dict[str, Any]) -> Any:
        session = self._get_session()
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["x-cg-api-key"] = self.api_key
        query = {k: str(v) for k, v in params.items()}
        async with session.get(self.base_url, params=query, headers=headers) as resp:
            if resp.status >= 400:
                body = (await resp.text())[:200]
                raise ProviderError(f"provider returned HTTP {resp.status}: {body}", status=resp.status)
            try:
                return await resp.json(content_type=None)
            except ValueError as e:
                raise ProviderError(f"provider returned invalid JSON: {e}") from e

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
