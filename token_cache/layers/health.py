"""
健康聚合层
周期性采样缓存 / 限流 / 任务状态，计算命中率、新鲜度与综合健康分。
只读不写：不会修改任何存储或限流状态。
"""

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from token_cache.layers.acquisition import UpstreamStats
from token_cache.layers.cache import CacheStore
from token_cache.layers.clock import Clock
from token_cache.layers.history import HistoryStore
from token_cache.layers.jobs import JobStore
from token_cache.layers.ratelimit import RateLimiter
from token_cache.layers.resolver import LookupStats

logger = logging.getLogger(__name__)

# 综合健康分权重（策略常量）
HEALTH_WEIGHTS = {
    "cache_efficiency": 0.4,
    "upstream_health": 0.3,
    "data_freshness": 0.3,
}
HEALTHY_SUCCESS_RATE = 0.9


class HealthSnapshot(BaseModel):
    recorded_at: datetime
    total_requests: int = 0
    hit_rate: float = 0.0
    avg_response_time_ms: float = 0.0
    fresh_count: int = 0
    stale_count: int = 0
    expired_count: int = 0
    total_cached: int = 0
    history_records: int = 0
    cache_efficiency: float = 0.0
    upstream_health: float = 0.0
    data_freshness: float = 0.0
    overall_score: float = 0.0
    status: str = "unknown"
    rate_limits: List[Dict[str, Any]] = Field(default_factory=list)
    providers: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, int] = Field(default_factory=dict)


def health_status(score: float) -> str:
    if score >= 80:
        return "healthy"
    if score >= 50:
        return "degraded"
    return "unhealthy"


def composite_score(cache_efficiency: float, upstream_health: float, data_freshness: float) -> float:
    return round(
        cache_efficiency * HEALTH_WEIGHTS["cache_efficiency"]
        + upstream_health * HEALTH_WEIGHTS["upstream_health"]
        + data_freshness * HEALTH_WEIGHTS["data_freshness"],
        1,
    )


class HealthAggregator:
    def __init__(
        self,
        cache_store: CacheStore,
        history_store: HistoryStore,
        job_store: JobStore,
        limiter: RateLimiter,
        lookup_stats: LookupStats,
        upstream_stats: UpstreamStats,
        provider_sources: Mapping[str, str],
        clock: Clock,
        stale_window: timedelta = timedelta(hours=1),
        keep: int = 120,
    ):
        self._cache = cache_store
        self._history = history_store
        self._jobs = job_store
        self._limiter = limiter
        self._lookup_stats = lookup_stats
        self._upstream_stats = upstream_stats
        self._provider_sources = dict(provider_sources)
        self._clock = clock
        self.stale_window = stale_window
        self._snapshots: Deque[HealthSnapshot] = deque(maxlen=keep)

    @property
    def latest(self) -> Optional[HealthSnapshot]:
        return self._snapshots[-1] if self._snapshots else None

    def history(self, limit: int = 20) -> List[HealthSnapshot]:
        return list(self._snapshots)[-limit:]

    def _upstream_health(self, windows) -> float:
        if not windows:
            return 100.0
        healthy = 0
        for window in windows:
            rates = [
                self._upstream_stats.success_rate(name)
                for name, source in self._provider_sources.items()
                if source == window.source
            ]
            rates = [r for r in rates if r is not None]
            success = min(rates) if rates else 1.0
            if not window.is_limited and success >= HEALTHY_SUCCESS_RATE:
                healthy += 1
        return healthy / len(windows) * 100

    async def sample(self) -> HealthSnapshot:
        now = self._clock.now()
        counts = await self._cache.freshness_counts(now, self.stale_window)
        windows = await self._limiter.snapshot()
        jobs = await self._jobs.counts()
        history_records = await self._history.count()

        stats = self._lookup_stats
        cache_efficiency = stats.hit_rate * 100
        upstream = self._upstream_health(windows)
        freshness = counts["fresh"] / counts["total"] * 100 if counts["total"] else 0.0
        score = composite_score(cache_efficiency, upstream, freshness)

        snapshot = HealthSnapshot(
            recorded_at=now,
            total_requests=stats.requests,
            hit_rate=round(stats.hit_rate, 4),
            avg_response_time_ms=round(stats.avg_response_ms, 2),
            fresh_count=counts["fresh"],
            stale_count=counts["stale"],
            expired_count=counts["expired"],
            total_cached=counts["total"],
            history_records=history_records,
            cache_efficiency=round(cache_efficiency, 1),
            upstream_health=round(upstream, 1),
            data_freshness=round(freshness, 1),
            overall_score=score,
            status=health_status(score),
            rate_limits=[w.to_dict() for w in windows],
            providers=self._upstream_stats.summary(),
            jobs=jobs,
        )
        self._snapshots.append(snapshot)
        logger.info(f"📊 缓存健康分: {score}%（{snapshot.status}）")
        return snapshot
