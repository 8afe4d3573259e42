"""
后台任务队列存储
任务认领是原子的：同一任务只会被一次 drain 拿到
后端：MongoDB（集合 background_jobs）→ 内存
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from token_cache.models.entities import (
    CLAIMABLE_STATUSES,
    FINISHED_STATUSES,
    OPEN_STATUSES,
    BackgroundJob,
    JobPriority,
    JobStatus,
    JobType,
)

logger = logging.getLogger(__name__)

JOBS_COLLECTION = "background_jobs"
LEASE_EXPIRED = "运行租约过期"


class JobStore(ABC):

    @abstractmethod
    async def insert(self, job: BackgroundJob) -> None:
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[BackgroundJob]:
        ...

    @abstractmethod
    async def save(self, job: BackgroundJob) -> None:
        """整体覆盖保存（任务状态只由持有者向前推进）"""

    @abstractmethod
    async def open_jobs(
        self, namespace: str, job_type: JobType, stale_before: Optional[datetime] = None
    ) -> List[BackgroundJob]:
        """
        PENDING / RETRY_SCHEDULED / RUNNING 状态的任务

        Args:
            stale_before: 给定时，started_at 早于该时间的 RUNNING 任务不计入
        """

    @abstractmethod
    async def merge_keys(self, job_id: str, keys: List[str]) -> bool:
        """向仍待认领的任务合并 key；任务已被认领时返回 False"""

    @abstractmethod
    async def raise_priority(self, job_id: str, priority: JobPriority) -> bool:
        ...

    @abstractmethod
    async def claim_next(
        self, now: datetime, job_types: Iterable[JobType]
    ) -> Optional[BackgroundJob]:
        """按 优先级 → scheduled_at 认领一个到期任务并置为 RUNNING"""

    @abstractmethod
    async def expire_running(self, stale_before: datetime, now: datetime) -> List[BackgroundJob]:
        """把 started_at 早于 stale_before 的 RUNNING 任务原子地推进到 FAILED 并返回"""

    @abstractmethod
    async def counts(self) -> Dict[str, int]:
        ...

    @abstractmethod
    async def recent(self, limit: int = 20) -> List[BackgroundJob]:
        ...

    @abstractmethod
    async def prune_finished(self, before: datetime) -> int:
        ...

    async def ensure_indexes(self) -> None:
        return None


def _sort_key(job: BackgroundJob):
    return (job.priority.rank, job.scheduled_at, job.created_at)


def _lease_expired(job: BackgroundJob, stale_before: Optional[datetime]) -> bool:
    return (
        stale_before is not None
        and job.status == JobStatus.RUNNING
        and job.started_at is not None
        and job.started_at < stale_before
    )


class MemoryJobStore(JobStore):
    def __init__(self):
        self._jobs: Dict[str, BackgroundJob] = {}
        self._lock = asyncio.Lock()

    async def insert(self, job):
        self._jobs[job.id] = job.model_copy(deep=True)

    async def get(self, job_id):
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def save(self, job):
        self._jobs[job.id] = job.model_copy(deep=True)

    async def open_jobs(self, namespace, job_type, stale_before=None):
        return [
            job.model_copy(deep=True) for job in self._jobs.values()
            if job.namespace == namespace and job.job_type == job_type
            and job.status in OPEN_STATUSES
            and not _lease_expired(job, stale_before)
        ]

    async def merge_keys(self, job_id, keys):
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in CLAIMABLE_STATUSES:
                return False
            for key in keys:
                if key not in job.keys:
                    job.keys.append(key)
            return True

    async def raise_priority(self, job_id, priority):
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in CLAIMABLE_STATUSES:
                return False
            if priority.rank < job.priority.rank:
                job.priority = priority
            return True

    async def claim_next(self, now, job_types):
        types = set(job_types)
        async with self._lock:
            due = [
                job for job in self._jobs.values()
                if job.status in CLAIMABLE_STATUSES
                and job.scheduled_at <= now
                and job.job_type in types
            ]
            if not due:
                return None
            job = min(due, key=_sort_key)
            job.status = JobStatus.RUNNING
            job.started_at = now
            job.attempts += 1
            return job.model_copy(deep=True)

    async def expire_running(self, stale_before, now):
        async with self._lock:
            expired = [job for job in self._jobs.values() if _lease_expired(job, stale_before)]
            for job in expired:
                job.status = JobStatus.FAILED
                job.completed_at = now
                job.errors.append(LEASE_EXPIRED)
            return [job.model_copy(deep=True) for job in expired]

    async def counts(self):
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    async def recent(self, limit=20):
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
        return [job.model_copy(deep=True) for job in jobs[:limit]]

    async def prune_finished(self, before):
        stale = [
            job_id for job_id, job in self._jobs.items()
            if job.status in FINISHED_STATUSES
            and job.completed_at is not None and job.completed_at < before
        ]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)


class MongoJobStore(JobStore):
    def __init__(self, db: AsyncIOMotorDatabase):
        self._coll = db[JOBS_COLLECTION]

    async def ensure_indexes(self) -> None:
        await self._coll.create_index(
            [("status", ASCENDING), ("priority_rank", ASCENDING), ("scheduled_at", ASCENDING)]
        )
        await self._coll.create_index(
            [("namespace", ASCENDING), ("job_type", ASCENDING), ("status", ASCENDING)]
        )

    async def insert(self, job):
        await self._coll.insert_one(job.to_document())

    async def get(self, job_id):
        doc = await self._coll.find_one({"_id": job_id})
        return BackgroundJob.from_document(doc) if doc else None

    async def save(self, job):
        await self._coll.replace_one({"_id": job.id}, job.to_document(), upsert=True)

    async def open_jobs(self, namespace, job_type, stale_before=None):
        query = {
            "namespace": namespace,
            "job_type": job_type.value,
            "status": {"$in": [s.value for s in OPEN_STATUSES]},
        }
        if stale_before is not None:
            query["$or"] = [
                {"status": {"$ne": JobStatus.RUNNING.value}},
                {"started_at": {"$gte": stale_before}},
            ]
        cursor = self._coll.find(query)
        return [BackgroundJob.from_document(doc) async for doc in cursor]

    async def merge_keys(self, job_id, keys):
        outcome = await self._coll.update_one(
            {"_id": job_id, "status": {"$in": [s.value for s in CLAIMABLE_STATUSES]}},
            {"$addToSet": {"keys": {"$each": list(keys)}}},
        )
        return outcome.matched_count == 1

    async def raise_priority(self, job_id, priority):
        outcome = await self._coll.update_one(
            {
                "_id": job_id,
                "status": {"$in": [s.value for s in CLAIMABLE_STATUSES]},
                "priority_rank": {"$gt": priority.rank},
            },
            {"$set": {"priority": priority.value, "priority_rank": priority.rank}},
        )
        return outcome.matched_count == 1

    async def claim_next(self, now, job_types):
        doc = await self._coll.find_one_and_update(
            {
                "status": {"$in": [s.value for s in CLAIMABLE_STATUSES]},
                "scheduled_at": {"$lte": now},
                "job_type": {"$in": [t.value for t in job_types]},
            },
            {
                "$set": {"status": JobStatus.RUNNING.value, "started_at": now},
                "$inc": {"attempts": 1},
            },
            sort=[("priority_rank", ASCENDING), ("scheduled_at", ASCENDING), ("created_at", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )
        return BackgroundJob.from_document(doc) if doc else None

    async def expire_running(self, stale_before, now):
        expired = []
        while True:
            doc = await self._coll.find_one_and_update(
                {"status": JobStatus.RUNNING.value, "started_at": {"$lt": stale_before}},
                {
                    "$set": {"status": JobStatus.FAILED.value, "completed_at": now},
                    "$push": {"errors": LEASE_EXPIRED},
                },
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                return expired
            expired.append(BackgroundJob.from_document(doc))

    async def counts(self):
        counts = {status.value: 0 for status in JobStatus}
        async for row in self._coll.aggregate([{"$group": {"_id": "$status", "n": {"$sum": 1}}}]):
            counts[row["_id"]] = row["n"]
        return counts

    async def recent(self, limit=20):
        cursor = self._coll.find().sort("created_at", DESCENDING).limit(limit)
        return [BackgroundJob.from_document(doc) async for doc in cursor]

    async def prune_finished(self, before):
        outcome = await self._coll.delete_many({
            "status": {"$in": [s.value for s in FINISHED_STATUSES]},
            "completed_at": {"$lt": before},
        })
        return outcome.deleted_count
