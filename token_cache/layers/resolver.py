"""
Layer 3 – 分级查询解析层
查询顺序：新鲜缓存 → 近期历史 → 合成数据

只对存储做读操作，从不等待上游网络调用；所有不是新鲜缓存命中的 key
都会报告为 missing 并转交刷新调度器，由后台任务补齐缓存。
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Set

from token_cache.layers.cache import CacheStore
from token_cache.layers.clock import Clock
from token_cache.layers.fallback import SyntheticGenerator
from token_cache.layers.history import HistoryStore
from token_cache.layers.scheduler import RefreshScheduler
from token_cache.models.entities import CacheEntry, CacheStatus, JobPriority, ValueSource

logger = logging.getLogger(__name__)

TIER_CACHE = "cache"
TIER_HISTORY = "history"

HISTORY_CONFIDENCE = 0.8
# 缺失 key 不超过该数量时以 HIGH 优先级入队
HIGH_PRIORITY_THRESHOLD = 5


@dataclass
class ResolveResult:
    namespace: str
    requested: List[str]
    results: Dict[str, CacheEntry]
    tiers: Dict[str, str]
    missing_keys: Set[str]
    cache_status: CacheStatus
    source: str
    response_time_ms: float = 0.0
    job_id: Optional[str] = None

    def items(self) -> List[CacheEntry]:
        """按请求顺序展开（保留重复 key）"""
        return [self.results[key] for key in self.requested]

    def to_payload(self) -> dict:
        values = []
        for key in self.requested:
            entry = self.results[key]
            values.append({
                "key": key,
                "value": entry.value,
                "source": self.tiers[key],
                "origin": entry.source.value,
                "provider": entry.provider,
                "confidence": entry.confidence,
                "created_at": entry.created_at.isoformat(),
                "expires_at": entry.expires_at.isoformat(),
            })
        return {
            "namespace": self.namespace,
            "values": values,
            "count": len(values),
            "source": self.source,
            "cache_status": self.cache_status.value,
            "missing_keys": sorted(self.missing_keys),
            "refresh_job_id": self.job_id,
            "response_time_ms": self.response_time_ms,
        }


class LookupStats:
    """查询命中统计（只由解析层写入，健康聚合层只读）"""

    def __init__(self):
        self.requests = 0
        self.key_hits = 0
        self.key_misses = 0
        self.total_response_ms = 0.0
        self.by_status: Counter = Counter()

    def record(self, result: ResolveResult) -> None:
        self.requests += 1
        hits = sum(1 for tier in result.tiers.values() if tier == TIER_CACHE)
        self.key_hits += hits
        self.key_misses += len(result.tiers) - hits
        self.total_response_ms += result.response_time_ms
        self.by_status[result.cache_status.value] += 1

    @property
    def hit_rate(self) -> float:
        total = self.key_hits + self.key_misses
        return self.key_hits / total if total else 0.0

    @property
    def avg_response_ms(self) -> float:
        return self.total_response_ms / self.requests if self.requests else 0.0


def _overall(tiers: Dict[str, str]) -> tuple:
    values = set(tiers.values())
    if values == {TIER_CACHE}:
        return CacheStatus.FRESH, "cache"
    if TIER_CACHE in values:
        return CacheStatus.PARTIAL, "mixed"
    if TIER_HISTORY in values:
        return CacheStatus.FALLBACK, "history" if values == {TIER_HISTORY} else "mixed"
    return CacheStatus.UNAVAILABLE, "synthetic"


class CacheResolver:
    """单个命名空间的分级查询"""

    def __init__(
        self,
        namespace: str,
        cache_store: CacheStore,
        history_store: HistoryStore,
        scheduler: RefreshScheduler,
        fallback: SyntheticGenerator,
        clock: Clock,
        history_window: timedelta = timedelta(hours=1),
        stats: Optional[LookupStats] = None,
    ):
        self.namespace = namespace
        self._cache = cache_store
        self._history = history_store
        self._scheduler = scheduler
        self._fallback = fallback
        self._clock = clock
        self.history_window = history_window
        self.stats = stats or LookupStats()

    async def resolve(self, keys: Sequence[str], force_refresh: bool = False) -> ResolveResult:
        started = self._clock.monotonic()
        requested = list(keys)
        unique = list(dict.fromkeys(requested))
        results: Dict[str, CacheEntry] = {}
        tiers: Dict[str, str] = {}

        if not unique:
            return ResolveResult(
                self.namespace, [], {}, {}, set(), CacheStatus.FRESH, TIER_CACHE
            )

        now = self._clock.now()

        # Tier 1: 新鲜缓存
        if not force_refresh:
            try:
                fresh = await self._cache.get_fresh(self.namespace, unique, now)
            except Exception as exc:
                logger.warning(f"⚠️ 缓存读取失败，降级到历史数据: {exc}")
                fresh = {}
            for key, entry in fresh.items():
                if entry.is_fresh(now):
                    results[key] = entry
                    tiers[key] = TIER_CACHE
            if len(results) == len(unique):
                logger.debug(f"缓存全部命中: {self.namespace} {len(unique)} 个 key")
                return self._finish(requested, results, tiers, set(), started, None)

        missing = [key for key in unique if key not in results]

        # Tier 2: 近期历史（只读近似值，不回写缓存）
        try:
            history = await self._history.latest(self.namespace, missing, now - self.history_window)
        except Exception as exc:
            logger.warning(f"⚠️ 历史数据读取失败，降级到合成数据: {exc}")
            history = {}
        for key, record in history.items():
            results[key] = CacheEntry(
                namespace=self.namespace,
                key=key,
                value=record.value,
                source=ValueSource.HISTORY,
                confidence=HISTORY_CONFIDENCE,
                created_at=record.observed_at,
                expires_at=record.observed_at + self.history_window,
                provider=record.provider,
            )
            tiers[key] = TIER_HISTORY

        # Tier 3: 合成数据兜底
        for key in missing:
            if key not in results:
                entry = self._fallback.generate(key)
                results[key] = entry
                tiers[key] = entry.source.value.lower()

        # 非新鲜命中的 key 一律交给后台刷新
        priority = JobPriority.HIGH if len(missing) <= HIGH_PRIORITY_THRESHOLD else JobPriority.NORMAL
        job_id = None
        try:
            enqueued = await self._scheduler.enqueue(
                self.namespace,
                missing,
                priority=priority,
                reason="force_refresh" if force_refresh else "cache_miss",
            )
            job_id = enqueued.job_id
        except Exception as exc:
            logger.warning(f"⚠️ 后台刷新任务入队失败: {exc}")

        return self._finish(requested, results, tiers, set(missing), started, job_id)

    def _finish(
        self,
        requested: List[str],
        results: Dict[str, CacheEntry],
        tiers: Dict[str, str],
        missing: Set[str],
        started: float,
        job_id: Optional[str],
    ) -> ResolveResult:
        status, source = _overall(tiers)
        result = ResolveResult(
            namespace=self.namespace,
            requested=requested,
            results=results,
            tiers=tiers,
            missing_keys=missing,
            cache_status=status,
            source=source,
            response_time_ms=round((self._clock.monotonic() - started) * 1000, 2),
            job_id=job_id,
        )
        self.stats.record(result)
        if status != CacheStatus.FRESH:
            logger.info(
                f"查询 {self.namespace}: {len(results)} 个 key，状态 {status.value}，"
                f"缺失 {len(missing)} 个"
            )
        return result
