import asyncio

import aiohttp
import pytest

from coinpulse.services.price_fetcher import (
    PriceFetcher,
    ProviderError,
    counts_as_provider_failure,
    is_retryable_error,
)
from coinpulse.services.resilience import CircuitBreaker, CircuitOpenError, RetryPolicy


class _FakeResponse:
    def __init__(self, status, payload):
        self.status = status
        self._payload = payload

    async def json(self, content_type=None):
        return self._payload

    async def text(self):
        return str(self._payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _FakeSession:
    """按顺序返回预置响应; 元素为异常时直接抛出"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def get(self, url, params=None, headers=None):
        self.requests.append({"url": url, "params": params, "headers": headers})
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return _FakeResponse(*item)

    async def close(self):
        self.closed = True


def _fetcher(session, **kwargs):
    kwargs.setdefault("retry", RetryPolicy(max_attempts=3, base_delay=0))
    kwargs.setdefault(
        "breaker",
        CircuitBreaker("test", failure_threshold=3, reset_timeout=30, is_failure=counts_as_provider_failure),
    )
    return PriceFetcher("https://api.example.com/coins/markets", session=session, **kwargs)


BTC = {"id": "bitcoin", "name": "Bitcoin", "symbol": "btc", "market_cap_rank": 1}
ETH = {"id": "ethereum", "name": "Ethereum", "symbol": "eth", "market_cap_rank": 2}


@pytest.mark.asyncio
async def test_fetch_top_coins_requests_each_page():
    session = _FakeSession([(200, [BTC]), (200, [ETH])])
    coins = await _fetcher(session, api_key="secret").fetch_top_coins(pages=2)

    assert sorted(c["id"] for c in coins) == ["bitcoin", "ethereum"]
    assert sorted(r["params"]["page"] for r in session.requests) == ["1", "2"]
    assert session.requests[0]["params"]["price_change_percentage"] == "1h,24h,7d"
    assert session.requests[0]["headers"]["x-cg-api-key"] == "secret"


@pytest.mark.asyncio
async def test_malformed_records_dropped():
    session = _FakeSession([(200, [BTC, {"id": "broken"}, "junk"])])
    coins = await _fetcher(session).fetch_top_coins(pages=1)
    assert coins == [BTC]


@pytest.mark.asyncio
async def test_non_list_body_is_provider_error():
    session = _FakeSession([(200, {"error": "oops"})])
    with pytest.raises(ProviderError):
        await _fetcher(session).fetch_top_coins(pages=1)


@pytest.mark.asyncio
async def test_fetch_by_ids_batches_with_pause(monkeypatch):
    sleeps = []

    async def _fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr("coinpulse.services.price_fetcher.asyncio.sleep", _fake_sleep)
    session = _FakeSession([(200, [BTC]), (200, [ETH])])
    fetcher = _fetcher(session, batch_size=1, batch_pause_seconds=2.0)

    coins = await fetcher.fetch_coins_by_ids(["bitcoin", "ethereum", "bitcoin"])

    assert [c["id"] for c in coins] == ["bitcoin", "ethereum"]
    assert [r["params"]["ids"] for r in session.requests] == ["bitcoin", "ethereum"]
    assert sleeps == [2.0]


@pytest.mark.asyncio
async def test_fetch_coin_returns_none_when_missing():
    session = _FakeSession([(200, [])])
    assert await _fetcher(session).fetch_coin("nope") is None


@pytest.mark.asyncio
async def test_retries_rate_limit_then_succeeds():
    session = _FakeSession([(429, "slow down"), (200, [BTC])])
    coins = await _fetcher(session).fetch_top_coins(pages=1)
    assert coins == [BTC]
    assert len(session.requests) == 2


@pytest.mark.asyncio
async def test_client_error_not_retried_and_does_not_trip():
    session = _FakeSession([(404, "not found")])
    fetcher = _fetcher(session)

    for _ in range(4):
        with pytest.raises(ProviderError) as exc_info:
            await fetcher.fetch_top_coins(pages=1)
        assert exc_info.value.status == 404

    assert len(session.requests) == 4
    assert fetcher.breaker.state == "closed"


@pytest.mark.asyncio
async def test_three_failures_open_breaker_and_next_call_skips_network():
    session = _FakeSession([aiohttp.ClientConnectionError("connection reset")])
    fetcher = _fetcher(session)

    with pytest.raises(aiohttp.ClientError):
        await fetcher.fetch_coin("bitcoin")
    assert len(session.requests) == 3
    assert fetcher.breaker.state == "open"

    with pytest.raises(CircuitOpenError):
        await fetcher.fetch_coin("bitcoin")
    assert len(session.requests) == 3


@pytest.mark.asyncio
async def test_close_leaves_injected_session_open():
    session = _FakeSession([(200, [])])
    fetcher = _fetcher(session)
    await fetcher.close()
    assert session.closed is False


def test_error_classification():
    assert is_retryable_error(aiohttp.ClientConnectionError())
    assert is_retryable_error(ProviderError("x", status=429))
    assert is_retryable_error(ProviderError("x", status=503))
    assert is_retryable_error(ProviderError("bad json"))
    assert not is_retryable_error(ProviderError("x", status=400))
    assert not is_retryable_error(KeyError("x"))

    assert counts_as_provider_failure(ProviderError("x", status=500))
    assert counts_as_provider_failure(ProviderError("x", status=429))
    assert not counts_as_provider_failure(ProviderError("x", status=401))
    assert counts_as_provider_failure(aiohttp.ClientConnectionError())


class _PageSession:
    """page=1 立即返回 404, 其余页一直挂起直到被取消"""

    def __init__(self):
        self.requested = []
        self.cancelled = []
        self.closed = False

    def get(self, url, params=None, headers=None):
        page = params["page"]
        self.requested.append(page)
        if page == "1":
            return _FakeResponse(404, "not found")
        return _HangingResponse(self, page)


class _HangingResponse:
    def __init__(self, session, page):
        self._session = session
        self._page = page

    async def __aenter__(self):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self._session.cancelled.append(self._page)
            raise

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.mark.asyncio
async def test_failed_page_cancels_sibling_requests():
    session = _PageSession()
    fetcher = _fetcher(session)

    with pytest.raises(ProviderError):
        await fetcher.fetch_top_coins(pages=2)

    assert sorted(session.requested) == ["1", "2"]
    assert session.cancelled == ["2"]
