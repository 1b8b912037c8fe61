"""
配置管理 - 使用Pydantic验证环境变量
行情源、缓存、索引重建、熔断等参数统一在这里声明
"""
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置 - 自动从环境变量加载并验证"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # PostgreSQL配置
    POSTGRES_HOST: str = Field(default="localhost", description="PostgreSQL主机")
    POSTGRES_PORT: int = Field(default=5432, ge=1, le=65535)
    POSTGRES_USER: str = Field(default="coinpulse")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_DB: str = Field(default="coinpulse")

    # Redis配置
    REDIS_HOST: str = Field(default="localhost")
    REDIS_PORT: int = Field(default=6379, ge=1, le=65535)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0, ge=0, le=15)

    # 行情源 (CoinGecko markets endpoint)
    COINGECKO_BASE_URL: str = Field(default="https://api.coingecko.com/api/v3/coins/markets")
    COINGECKO_API_KEY: str = Field(default="")
    VS_CURRENCY: str = Field(default="usd")

    # 分页 / 批量
    PAGE_SIZE: int = Field(default=250, ge=1, le=250)
    TOP_PAGES: int = Field(default=2, ge=1, le=2)
    WATCHLIST_BATCH_SIZE: int = Field(default=50, ge=1, le=250)
    WATCHLIST_BATCH_PAUSE_SECONDS: float = Field(default=2.0, ge=0)

    # 缓存
    ENTITY_TTL_SECONDS: int = Field(default=300, ge=1)
    WATCHLIST_TTL_SECONDS: int = Field(default=600, ge=1)
    PAGE_TTL_SECONDS: int = Field(default=0, ge=0, description="0 表示页面快照不过期")
    COIN_UPDATE_CHANNEL: str = Field(default="coin-updates")
    CACHE_KEY_PREFIX: str = Field(default="")

    # 调度周期
    INDEX_REBUILD_INTERVAL_SECONDS: float = Field(default=600.0, gt=0)
    TOP_COINS_INTERVAL_SECONDS: float = Field(default=120.0, gt=0)
    WATCHLIST_INTERVAL_SECONDS: float = Field(default=300.0, gt=0)
    WORKER_ENABLED: bool = Field(default=True)

    # 重试 / 熔断
    PROVIDER_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    PROVIDER_RETRY_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    PROVIDER_RETRY_BASE_DELAY: float = Field(default=0.1, ge=0)
    BREAKER_FAILURE_THRESHOLD: int = Field(default=3, ge=1)
    BREAKER_RESET_SECONDS: float = Field(default=30.0, gt=0)

    # 搜索 / 索引重建回退查询
    SEARCH_DEFAULT_LIMIT: int = Field(default=10, ge=1)
    SEARCH_MAX_LIMIT: int = Field(default=50, ge=1)
    FALLBACK_QUERY_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    FALLBACK_QUERY_LIMIT: int = Field(default=5000, ge=1)

    # 日志级别
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")

    # API配置
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000, ge=1, le=65535)

    @field_validator("COINGECKO_BASE_URL")
    @classmethod
    def validate_provider_url(cls, v: str) -> str:
        """行情源地址必须配置，否则 worker 无法工作"""
        v = (v or "").strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("COINGECKO_BASE_URL 必须是 http(s) 地址")
        return v.rstrip("/")

    @field_validator("CACHE_KEY_PREFIX")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        v = (v or "").strip()
        if v and not v.endswith(":"):
            v = f"{v}:"
        return v

    @property
    def postgres_url(self) -> str:
        """PostgreSQL连接URL"""
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        """Redis连接URL"""
        password_part = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{password_part}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


@lru_cache()
def get_settings() -> Settings:
    """
    获取配置单例
    使用lru_cache确保Settings只被实例化一次
    """
    return Settings()
