"""
缓存刷新服务
整合限流、调度两层，对外提供手动触发刷新的统一入口
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from token_cache.layers.clock import Clock
from token_cache.layers.ratelimit import RateLimiter
from token_cache.layers.scheduler import RefreshScheduler
from token_cache.models.entities import JobPriority, JobStatus, JobType

logger = logging.getLogger(__name__)


@dataclass
class RefreshOutcome:
    namespace: str
    rate_limited: bool = False
    next_available_time: Optional[datetime] = None
    retry_after_seconds: int = 0
    job_id: Optional[str] = None
    enqueued: List[str] = field(default_factory=list)
    coalesced: List[str] = field(default_factory=list)
    drained: bool = False
    summary: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "namespace": self.namespace,
            "rate_limited": self.rate_limited,
            "job_id": self.job_id,
            "enqueued": len(self.enqueued),
            "coalesced": len(self.coalesced),
            "drained": self.drained,
            "processed": self.summary.get("processed", 0),
            "updated": self.summary.get("updated", 0),
            "failed": self.summary.get("failed", 0),
            "deferred": self.summary.get("deferred", 0),
            "errors": self.summary.get("errors", []),
        }
        if self.rate_limited:
            data["next_available_time"] = self.next_available_time.isoformat()
            data["retry_after_seconds"] = self.retry_after_seconds
        return data


class RefreshService:
    """手动刷新业务服务"""

    def __init__(self, scheduler: RefreshScheduler, limiter: RateLimiter, clock: Clock):
        self._scheduler = scheduler
        self._limiter = limiter
        self._clock = clock

    async def _out_of_budget(self, namespace: str) -> bool:
        sources = self._scheduler.sources_for(namespace)
        if not sources:
            return False
        for source in sources:
            if await self._limiter.has_budget(source):
                return False
        return True

    async def trigger(
        self,
        namespace: str,
        batch_size: int,
        priority: JobPriority = JobPriority.NORMAL,
        specific_keys: Optional[List[str]] = None,
        drain_now: bool = True,
    ) -> RefreshOutcome:
        """
        触发一次刷新

        Args:
            namespace: 缓存命名空间
            batch_size: 本次 drain 最多处理的 key 数
            priority: 入队优先级
            specific_keys: 指定刷新的 key；为空时按最陈旧的缓存条目整体刷新
            drain_now: 是否入队后立即执行一轮 drain
        """
        outcome = RefreshOutcome(namespace=namespace)
        keys = list(dict.fromkeys(specific_keys or []))

        # 所有数据源都已耗尽额度：整体延期，不做部分工作
        if await self._out_of_budget(namespace):
            sources = self._scheduler.sources_for(namespace)
            next_time = await self._limiter.next_available(sources)
            delay = max(next_time - self._clock.now(), timedelta(0))
            if keys:
                enqueued = await self._scheduler.enqueue(
                    namespace,
                    keys,
                    priority=priority,
                    reason="rate_limited",
                    status=JobStatus.RETRY_SCHEDULED,
                    delay=delay,
                )
                outcome.job_id = enqueued.job_id
                outcome.enqueued = enqueued.added
                outcome.coalesced = enqueued.coalesced
            else:
                job = await self._scheduler.enqueue_job(
                    namespace,
                    JobType.FULL_REFRESH,
                    priority=priority,
                    status=JobStatus.RETRY_SCHEDULED,
                    delay=delay,
                    reason="rate_limited",
                )
                outcome.job_id = job.id
            outcome.rate_limited = True
            outcome.next_available_time = next_time
            outcome.retry_after_seconds = max(1, int(delay.total_seconds()))
            logger.warning(
                f"⚠️ {namespace} 所有数据源额度已耗尽，刷新延期到 {next_time.isoformat()}"
            )
            return outcome

        if keys:
            enqueued = await self._scheduler.enqueue(
                namespace, keys, priority=priority, reason="manual"
            )
            outcome.job_id = enqueued.job_id
            outcome.enqueued = enqueued.added
            outcome.coalesced = enqueued.coalesced
        else:
            job = await self._scheduler.enqueue_job(
                namespace, JobType.FULL_REFRESH, priority=priority, reason="manual"
            )
            outcome.job_id = job.id

        if drain_now:
            summary = await self._scheduler.drain(max_batch=batch_size)
            outcome.drained = True
            outcome.summary = summary.to_dict()
        return outcome
