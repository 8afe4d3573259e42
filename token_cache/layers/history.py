"""
历史观测存储
只追加、保留有限时间窗的观测记录，作为缓存未命中时的第二级回退
后端：MongoDB（集合 price_history）→ 内存
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from token_cache.models.entities import HistoryRecord

logger = logging.getLogger(__name__)

HISTORY_COLLECTION = "price_history"


class HistoryStore(ABC):

    @abstractmethod
    async def append(self, record: HistoryRecord) -> None:
        ...

    @abstractmethod
    async def latest(
        self, namespace: str, keys: Iterable[str], since: datetime
    ) -> Dict[str, HistoryRecord]:
        """每个 key 在 since 之后最新的一条记录"""

    @abstractmethod
    async def prune(self, before: datetime) -> int:
        """删除 before 之前的记录，返回删除条数"""

    @abstractmethod
    async def count(self, namespace: Optional[str] = None) -> int:
        ...

    async def ensure_indexes(self) -> None:
        return None


class MemoryHistoryStore(HistoryStore):
    def __init__(self):
        self._records: Dict[Tuple[str, str], List[HistoryRecord]] = defaultdict(list)

    async def append(self, record):
        self._records[(record.namespace, record.key)].append(record.model_copy(deep=True))

    async def latest(self, namespace, keys, since):
        result = {}
        for key in keys:
            candidates = [
                r for r in self._records.get((namespace, key), []) if r.observed_at >= since
            ]
            if candidates:
                result[key] = max(candidates, key=lambda r: r.observed_at).model_copy()
        return result

    async def prune(self, before):
        removed = 0
        for slot, records in list(self._records.items()):
            kept = [r for r in records if r.observed_at >= before]
            removed += len(records) - len(kept)
            if kept:
                self._records[slot] = kept
            else:
                del self._records[slot]
        return removed

    async def count(self, namespace=None):
        return sum(
            len(records) for (ns, _), records in self._records.items()
            if namespace is None or ns == namespace
        )


class MongoHistoryStore(HistoryStore):
    def __init__(self, db: AsyncIOMotorDatabase):
        self._coll = db[HISTORY_COLLECTION]

    async def ensure_indexes(self) -> None:
        await self._coll.create_index(
            [("namespace", ASCENDING), ("key", ASCENDING), ("observed_at", DESCENDING)]
        )
        await self._coll.create_index([("observed_at", ASCENDING)])

    async def append(self, record):
        doc = record.model_dump()
        doc["source"] = record.source.value
        await self._coll.insert_one(doc)

    async def latest(self, namespace, keys, since):
        pipeline = [
            {"$match": {
                "namespace": namespace,
                "key": {"$in": list(keys)},
                "observed_at": {"$gte": since},
            }},
            {"$sort": {"observed_at": -1}},
            {"$group": {"_id": "$key", "doc": {"$first": "$$ROOT"}}},
        ]
        result = {}
        async for row in self._coll.aggregate(pipeline):
            doc = dict(row["doc"])
            doc.pop("_id", None)
            record = HistoryRecord(**doc)
            result[record.key] = record
        return result

    async def prune(self, before):
        outcome = await self._coll.delete_many({"observed_at": {"$lt": before}})
        return outcome.deleted_count

    async def count(self, namespace=None):
        query = {"namespace": namespace} if namespace is not None else {}
        return await self._coll.count_documents(query)
