import pytest
from pydantic import ValidationError

from coinpulse.config import Settings
from coinpulse.services import ServiceContainer


def _settings(**overrides):
    return Settings(_env_file=None, **overrides)


def test_defaults():
    settings = _settings()
    assert settings.PAGE_SIZE == 250
    assert settings.ENTITY_TTL_SECONDS == 300
    assert settings.WATCHLIST_TTL_SECONDS == 600
    assert settings.PAGE_TTL_SECONDS == 0
    assert settings.COIN_UPDATE_CHANNEL == "coin-updates"
    assert settings.BREAKER_FAILURE_THRESHOLD == 3


def test_provider_url_validated():
    assert _settings(COINGECKO_BASE_URL="https://example.com/markets/").COINGECKO_BASE_URL == "https://example.com/markets"
    with pytest.raises(ValidationError):
        _settings(COINGECKO_BASE_URL="ftp://example.com")


def test_key_prefix_normalized():
    assert _settings(CACHE_KEY_PREFIX="cp").CACHE_KEY_PREFIX == "cp:"
    assert _settings(CACHE_KEY_PREFIX="").CACHE_KEY_PREFIX == ""


def test_urls():
    settings = _settings(POSTGRES_USER="u", POSTGRES_PASSWORD="p", POSTGRES_DB="d", REDIS_PASSWORD="r")
    assert settings.postgres_url == "postgresql://u:p@localhost:5432/d"
    assert settings.redis_url == "redis://:r@localhost:6379/0"


def test_container_wires_services(fake_redis):
    settings = _settings(CACHE_KEY_PREFIX="cp", SEARCH_MAX_LIMIT=20, BREAKER_FAILURE_THRESHOLD=5)
    ServiceContainer.initialize(fake_redis, settings)

    assert ServiceContainer.get_keys().entity_key("bitcoin") == "cp:coin:bitcoin"
    assert ServiceContainer.get_cache().client is fake_redis
    assert ServiceContainer.get_search_service().max_limit == 20
    assert ServiceContainer.get_price_fetcher().breaker.failure_threshold == 5
    assert ServiceContainer.get_index_service().handle is ServiceContainer.get_index_handle()


def test_container_requires_initialize():
    with pytest.raises(RuntimeError):
        ServiceContainer.get_cache()
