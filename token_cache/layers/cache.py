"""
Layer 2 – 缓存存储层
key → 最新值 的持久表，带新鲜度元数据
后端：MongoDB（持久化，集合 token_cache）→ 内存（降级模式）
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from token_cache.models.entities import CacheEntry

logger = logging.getLogger(__name__)

CACHE_COLLECTION = "token_cache"


def _freshness_bucket(entry: CacheEntry, now: datetime, stale_window: timedelta) -> str:
    if entry.is_fresh(now):
        return "fresh"
    if now - entry.expires_at < stale_window:
        return "stale"
    return "expired"


class CacheStore(ABC):
    """缓存表接口；读路径从不修改条目，写入只有幂等 upsert"""

    @abstractmethod
    async def get_fresh(
        self, namespace: str, keys: Iterable[str], now: datetime
    ) -> Dict[str, CacheEntry]:
        """批量读取 expires_at > now 的条目"""

    @abstractmethod
    async def get_many(self, namespace: str, keys: Iterable[str]) -> Dict[str, CacheEntry]:
        """批量读取条目，包含已过期（stale）的"""

    @abstractmethod
    async def upsert(self, entry: CacheEntry) -> None:
        ...

    @abstractmethod
    async def stale_keys(self, namespace: str, now: datetime, limit: int) -> List[str]:
        """已过期的 key，最旧的排在前面"""

    @abstractmethod
    async def freshness_counts(
        self, now: datetime, stale_window: timedelta, namespace: Optional[str] = None
    ) -> Dict[str, int]:
        ...

    async def ensure_indexes(self) -> None:
        return None


class MemoryCacheStore(CacheStore):
    def __init__(self):
        self._entries: Dict[Tuple[str, str], CacheEntry] = {}

    async def get_fresh(self, namespace, keys, now):
        result = {}
        for key in keys:
            entry = self._entries.get((namespace, key))
            if entry is not None and entry.is_fresh(now):
                result[key] = entry.model_copy()
        return result

    async def get_many(self, namespace, keys):
        return {
            key: self._entries[(namespace, key)].model_copy()
            for key in keys
            if (namespace, key) in self._entries
        }

    async def upsert(self, entry):
        # 并发写同一 key 时后写者生效
        self._entries[(entry.namespace, entry.key)] = entry.model_copy(deep=True)

    async def stale_keys(self, namespace, now, limit):
        stale = [
            entry for (ns, _), entry in self._entries.items()
            if ns == namespace and not entry.is_fresh(now)
        ]
        stale.sort(key=lambda e: e.expires_at)
        return [entry.key for entry in stale[:limit]]

    async def freshness_counts(self, now, stale_window, namespace=None):
        counts = {"fresh": 0, "stale": 0, "expired": 0, "total": 0}
        for (ns, _), entry in self._entries.items():
            if namespace is not None and ns != namespace:
                continue
            counts[_freshness_bucket(entry, now, stale_window)] += 1
            counts["total"] += 1
        return counts


class MongoCacheStore(CacheStore):
    def __init__(self, db: AsyncIOMotorDatabase):
        self._coll = db[CACHE_COLLECTION]

    async def ensure_indexes(self) -> None:
        await self._coll.create_index(
            [("namespace", ASCENDING), ("key", ASCENDING)], unique=True
        )
        await self._coll.create_index([("namespace", ASCENDING), ("expires_at", ASCENDING)])

    @staticmethod
    def _to_entry(doc: dict) -> CacheEntry:
        doc = dict(doc)
        doc.pop("_id", None)
        return CacheEntry(**doc)

    async def _find(self, query: dict) -> Dict[str, CacheEntry]:
        result = {}
        async for doc in self._coll.find(query):
            entry = self._to_entry(doc)
            result[entry.key] = entry
        return result

    async def get_fresh(self, namespace, keys, now):
        return await self._find({
            "namespace": namespace,
            "key": {"$in": list(keys)},
            "expires_at": {"$gt": now},
        })

    async def get_many(self, namespace, keys):
        return await self._find({"namespace": namespace, "key": {"$in": list(keys)}})

    async def upsert(self, entry):
        doc = entry.model_dump()
        doc["source"] = entry.source.value
        await self._coll.update_one(
            {"namespace": entry.namespace, "key": entry.key},
            {"$set": doc},
            upsert=True,
        )
        logger.debug(f"缓存写入（MongoDB）: {entry.namespace}:{entry.key}")

    async def stale_keys(self, namespace, now, limit):
        cursor = (
            self._coll.find(
                {"namespace": namespace, "expires_at": {"$lte": now}},
                projection={"key": 1},
            )
            .sort("expires_at", ASCENDING)
            .limit(limit)
        )
        return [doc["key"] async for doc in cursor]

    async def freshness_counts(self, now, stale_window, namespace=None):
        base = {"namespace": namespace} if namespace is not None else {}
        fresh = await self._coll.count_documents({**base, "expires_at": {"$gt": now}})
        stale = await self._coll.count_documents(
            {**base, "expires_at": {"$lte": now, "$gt": now - stale_window}}
        )
        expired = await self._coll.count_documents(
            {**base, "expires_at": {"$lte": now - stale_window}}
        )
        return {"fresh": fresh, "stale": stale, "expired": expired, "total": fresh + stale + expired}
