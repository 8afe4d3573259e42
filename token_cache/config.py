"""
代币缓存服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class CacheServiceSettings(BaseSettings):
    """代币缓存服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── MongoDB 配置（支持服务发现） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="tokenwars")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（支持服务发现） ─────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 上游数据源配置 ─────────────────────────────────────
    JUPITER_PRICE_URL: str = Field(default="https://lite-api.jup.ag/price/v2")
    JUPITER_TOKEN_URL: str = Field(default="https://lite-api.jup.ag/tokens/v1/token")
    COINGECKO_BASE_URL: str = Field(default="https://api.coingecko.com/api/v3")
    COINGECKO_API_KEY: str = Field(default="")
    PROVIDER_TIMEOUT_SECONDS: float = Field(default=5.0)
    PROVIDER_USER_AGENT: str = Field(default="TokenWars/1.0")

    # ── 限流配置（每个数据源每窗口的调用预算） ────────────────
    JUPITER_REQUESTS_PER_WINDOW: int = Field(default=100)
    COINGECKO_REQUESTS_PER_WINDOW: int = Field(default=30)
    RATE_LIMIT_WINDOW_MINUTES: int = Field(default=60)

    # ── 缓存配置 ──────────────────────────────────────────
    PRICE_CACHE_TTL: int = Field(default=120)        # 价格缓存 TTL（秒）
    TOKEN_CACHE_TTL: int = Field(default=300)        # 代币元数据 TTL（秒）
    HISTORY_WINDOW_MINUTES: int = Field(default=60)  # 历史回退的有效时间窗
    HISTORY_RETENTION_HOURS: int = Field(default=24)
    STALE_WINDOW_MINUTES: int = Field(default=60)    # 过期但仍视为 stale 的时间窗
    MAX_LOOKUP_KEYS: int = Field(default=100)

    # ── 后台刷新配置 ──────────────────────────────────────
    REFRESH_BATCH_SIZE: int = Field(default=10)
    REFRESH_SUB_BATCH_SIZE: int = Field(default=5)
    REFRESH_SUB_BATCH_PAUSE_SECONDS: float = Field(default=2.0)
    REFRESH_MAX_CONCURRENCY: int = Field(default=5)
    REFRESH_RETRY_DELAY_MINUTES: int = Field(default=60)
    REFRESH_FAILURE_BACKOFF_MINUTES: int = Field(default=5)
    REFRESH_MAX_ATTEMPTS: int = Field(default=3)
    REFRESH_COALESCE_SECONDS: int = Field(default=30)
    DRAIN_BUDGET_SECONDS: float = Field(default=50.0)
    RUNNING_LEASE_SECONDS: int = Field(default=600)     # RUNNING 任务超过该时长视为中断
    JOB_RETENTION_HOURS: int = Field(default=24)

    # ── 后台循环配置 ──────────────────────────────────────
    BACKGROUND_ENABLED: bool = Field(default=True)
    DRAIN_INTERVAL_SECONDS: float = Field(default=60.0)
    HEALTH_INTERVAL_SECONDS: float = Field(default=30.0)
    OPTIMIZE_INTERVAL_SECONDS: float = Field(default=3600.0)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="UTC")


@lru_cache
def get_settings() -> CacheServiceSettings:
    """获取全局配置（单例）"""
    return CacheServiceSettings()
