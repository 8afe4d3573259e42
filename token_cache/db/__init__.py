"""
数据库连接管理模块
统一管理 MongoDB（异步）和 Redis（异步）连接；连接对象显式构造并注入，不使用模块级全局状态
"""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from redis.asyncio import Redis, ConnectionPool

from token_cache.config import CacheServiceSettings

logger = logging.getLogger(__name__)


class DatabaseConnections:
    """MongoDB / Redis 连接持有者，任一连接失败时对应属性保持为 None（降级运行）"""

    def __init__(self, settings: CacheServiceSettings):
        self._settings = settings
        self.mongo_client: Optional[AsyncIOMotorClient] = None
        self.mongo_db: Optional[AsyncIOMotorDatabase] = None
        self.redis: Optional[Redis] = None
        self._redis_pool: Optional[ConnectionPool] = None

    async def init_mongodb(self) -> bool:
        """初始化 MongoDB 异步连接，返回是否成功"""
        settings = self._settings
        if not settings.MONGODB_ENABLED:
            logger.info("MongoDB 未启用，跳过初始化")
            return False
        try:
            self.mongo_client = AsyncIOMotorClient(
                settings.MONGO_URI,
                maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
                minPoolSize=settings.MONGO_MIN_CONNECTIONS,
                serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
                connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
                socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
                tz_aware=True,
            )
            self.mongo_db = self.mongo_client[settings.MONGODB_DATABASE]
            await self.mongo_client.admin.command("ping")
            logger.info(f"✅ MongoDB 连接成功: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
            return True
        except Exception as exc:
            logger.warning(f"⚠️ MongoDB 连接失败（服务将继续以降级模式运行）: {exc}")
            if self.mongo_client is not None:
                self.mongo_client.close()
            self.mongo_client = None
            self.mongo_db = None
            return False

    async def init_redis(self) -> bool:
        """初始化 Redis 异步连接，返回是否成功"""
        settings = self._settings
        if not settings.REDIS_ENABLED:
            logger.info("Redis 未启用，跳过初始化")
            return False
        try:
            self._redis_pool = ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=10,
            )
            self.redis = Redis(connection_pool=self._redis_pool)
            await self.redis.ping()
            logger.info(f"✅ Redis 连接成功: {settings.REDIS_HOST}:{settings.REDIS_PORT}")
            return True
        except Exception as exc:
            logger.warning(f"⚠️ Redis 连接失败（服务将继续以降级模式运行）: {exc}")
            self.redis = None
            self._redis_pool = None
            return False

    async def close(self) -> None:
        """关闭所有数据库连接"""
        if self.mongo_client:
            self.mongo_client.close()
            self.mongo_client = None
            self.mongo_db = None
            logger.info("MongoDB 连接已关闭")
        if self.redis:
            await self.redis.aclose()
            self.redis = None
        if self._redis_pool:
            await self._redis_pool.disconnect()
            self._redis_pool = None
            logger.info("Redis 连接已关闭")

    async def check_health(self) -> dict:
        """检查所有数据库连接健康状态"""
        settings = self._settings
        result = {
            "mongodb": {"status": "disabled"},
            "redis": {"status": "disabled"},
        }
        if self.mongo_client:
            try:
                await self.mongo_client.admin.command("ping")
                result["mongodb"] = {"status": "healthy", "host": settings.MONGODB_HOST}
            except Exception as exc:
                result["mongodb"] = {"status": "unhealthy", "error": str(exc)}
        elif settings.MONGODB_ENABLED:
            result["mongodb"] = {"status": "disconnected"}

        if self.redis:
            try:
                await self.redis.ping()
                result["redis"] = {"status": "healthy", "host": settings.REDIS_HOST}
            except Exception as exc:
                result["redis"] = {"status": "unhealthy", "error": str(exc)}
        elif settings.REDIS_ENABLED:
            result["redis"] = {"status": "disconnected"}

        return result
