"""
后台刷新调度层
enqueue：把需要刷新的 key 幂等地合并进待处理任务
drain  ：按优先级认领任务，分小批并发调用上游数据源并回写缓存

drain 期间的单 key 失败只记录在任务的错误列表里，部分成功是常态而非异常。
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from token_cache.layers.acquisition import ProviderError, Unreachable, UpstreamProvider, UpstreamStats
from token_cache.layers.cache import CacheStore
from token_cache.layers.clock import Clock
from token_cache.layers.history import HistoryStore
from token_cache.layers.jobs import JobStore
from token_cache.layers.ratelimit import RateLimiter
from token_cache.models.entities import (
    CLAIMABLE_STATUSES,
    BackgroundJob,
    CacheEntry,
    HistoryRecord,
    JobPriority,
    JobStatus,
    JobType,
)

logger = logging.getLogger(__name__)

ALL_JOB_TYPES = (JobType.REFRESH_KEYS, JobType.FULL_REFRESH, JobType.OPTIMIZE)
MAINTENANCE_NAMESPACE = "*"

UPDATED = "updated"
FAILED = "failed"
DEFERRED = "deferred"


@dataclass
class EnqueueResult:
    job_id: Optional[str]
    added: List[str] = field(default_factory=list)
    coalesced: List[str] = field(default_factory=list)


@dataclass
class KeyOutcome:
    key: str
    status: str
    provider: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: bool = False
    attempted: bool = False


@dataclass
class DrainSummary:
    jobs: int = 0
    processed: int = 0
    updated: int = 0
    failed: int = 0
    deferred: int = 0
    requeued: int = 0
    errors: List[str] = field(default_factory=list)
    error_kinds: Dict[str, int] = field(default_factory=dict)
    spawned_jobs: List[str] = field(default_factory=list)
    timed_out: bool = False
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class RefreshScheduler:
    """后台刷新任务的入队与消费"""

    def __init__(
        self,
        *,
        cache_store: CacheStore,
        history_store: HistoryStore,
        job_store: JobStore,
        limiter: RateLimiter,
        providers: Mapping[str, Sequence[UpstreamProvider]],
        ttls: Mapping[str, int],
        clock: Clock,
        upstream_stats: Optional[UpstreamStats] = None,
        batch_size: int = 10,
        sub_batch_size: int = 5,
        sub_batch_pause: float = 2.0,
        max_concurrency: int = 5,
        retry_delay: timedelta = timedelta(hours=1),
        failure_backoff: timedelta = timedelta(minutes=5),
        max_attempts: int = 3,
        coalesce_window: timedelta = timedelta(seconds=30),
        running_lease: timedelta = timedelta(minutes=10),
        drain_budget: Optional[float] = None,
        history_retention: timedelta = timedelta(hours=24),
        job_retention: timedelta = timedelta(hours=24),
    ):
        self._cache = cache_store
        self._history = history_store
        self._jobs = job_store
        self._limiter = limiter
        self._providers = {ns: list(items) for ns, items in providers.items()}
        self._ttls = dict(ttls)
        self._clock = clock
        self.upstream_stats = upstream_stats or UpstreamStats()
        self.batch_size = batch_size
        self.sub_batch_size = max(1, sub_batch_size)
        self.sub_batch_pause = sub_batch_pause
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self.retry_delay = retry_delay
        self.failure_backoff = failure_backoff
        self.max_attempts = max_attempts
        self.coalesce_window = coalesce_window
        self.running_lease = running_lease
        self.drain_budget = drain_budget
        self.history_retention = history_retention
        self.job_retention = job_retention
        self._drain_locks: Dict[frozenset, asyncio.Lock] = {}
        self._enqueue_locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[Callable[[], None]] = []

    # ── 数据源信息 ────────────────────────────────────────

    def providers_for(self, namespace: str) -> List[UpstreamProvider]:
        return self._providers.get(namespace, [])

    def sources_for(self, namespace: str) -> List[str]:
        return list(dict.fromkeys(p.source for p in self.providers_for(namespace)))

    # ── 入队 ──────────────────────────────────────────────

    def add_listener(self, callback: Callable[[], None]) -> None:
        """有新 key 入队时回调（用于提前唤醒 drain 循环）"""
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in self._listeners:
            callback()

    def _enqueue_lock(self, namespace: str) -> asyncio.Lock:
        if namespace not in self._enqueue_locks:
            self._enqueue_locks[namespace] = asyncio.Lock()
        return self._enqueue_locks[namespace]

    def _stale_before(self) -> datetime:
        """started_at 早于该时间的 RUNNING 任务视为持有者已失联"""
        return self._clock.now() - self.running_lease

    async def enqueue(
        self,
        namespace: str,
        keys: Iterable[str],
        priority: JobPriority = JobPriority.NORMAL,
        reason: Optional[str] = None,
        status: JobStatus = JobStatus.PENDING,
        delay: timedelta = timedelta(0),
    ) -> EnqueueResult:
        """
        幂等入队：已在未完成任务中的 key 不会重复入队，
        合并窗口内同优先级、同状态的待认领任务直接追加 key

        同一命名空间的入队串行执行，"查询未完成任务 → 插入/合并" 之间不会交错。

        Args:
            status: PENDING 立即可认领；RETRY_SCHEDULED 配合 delay 延期执行
            delay: 距现在的延期时长
        """
        keys = list(dict.fromkeys(k for k in keys if k))
        if not keys:
            return EnqueueResult(job_id=None)

        async with self._enqueue_lock(namespace):
            open_jobs = await self._jobs.open_jobs(
                namespace, JobType.REFRESH_KEYS, stale_before=self._stale_before()
            )
            covered: Dict[str, BackgroundJob] = {}
            for job in open_jobs:
                for key in job.keys:
                    covered.setdefault(key, job)

            coalesced = [k for k in keys if k in covered]
            new_keys = [k for k in keys if k not in covered]

            bumped = {covered[k].id: covered[k] for k in coalesced}
            for job in bumped.values():
                if job.status in CLAIMABLE_STATUSES and priority.rank < job.priority.rank:
                    await self._jobs.raise_priority(job.id, priority)

            if not new_keys:
                logger.debug(f"刷新请求已合并到现有任务: {namespace} {len(coalesced)} 个 key")
                return EnqueueResult(job_id=covered[coalesced[0]].id, coalesced=coalesced)

            now = self._clock.now()
            candidates = [
                job for job in open_jobs
                if job.status == status
                and job.priority == priority
                and job.created_at >= now - self.coalesce_window
            ]
            target = max(candidates, key=lambda j: j.created_at) if candidates else None
            if target is not None and await self._jobs.merge_keys(target.id, new_keys):
                job_id = target.id
            else:
                job = BackgroundJob(
                    job_type=JobType.REFRESH_KEYS,
                    namespace=namespace,
                    keys=new_keys,
                    priority=priority,
                    status=status,
                    reason=reason,
                    scheduled_at=now + delay,
                    created_at=now,
                )
                await self._jobs.insert(job)
                job_id = job.id

        logger.info(
            f"📥 刷新任务入队: {namespace} 新增 {len(new_keys)} 个 key，"
            f"合并 {len(coalesced)} 个（优先级 {priority.value}，状态 {status.value}）"
        )
        if status == JobStatus.PENDING and not delay:
            self._notify()
        return EnqueueResult(job_id=job_id, added=new_keys, coalesced=coalesced)

    async def enqueue_job(
        self,
        namespace: str,
        job_type: JobType,
        priority: JobPriority = JobPriority.LOW,
        keys: Optional[List[str]] = None,
        status: JobStatus = JobStatus.PENDING,
        delay: timedelta = timedelta(0),
        reason: Optional[str] = None,
    ) -> BackgroundJob:
        """入队 FULL_REFRESH / OPTIMIZE 或延期执行的任务；同类型未完成任务已存在时复用"""
        async with self._enqueue_lock(namespace):
            if job_type != JobType.REFRESH_KEYS and not keys:
                existing = await self._jobs.open_jobs(
                    namespace, job_type, stale_before=self._stale_before()
                )
                if existing:
                    return existing[0]
            now = self._clock.now()
            job = BackgroundJob(
                job_type=job_type,
                namespace=namespace,
                keys=list(keys or []),
                priority=priority,
                status=status,
                reason=reason,
                scheduled_at=now + delay,
                created_at=now,
            )
            await self._jobs.insert(job)
        if status == JobStatus.PENDING and not delay:
            self._notify()
        return job

    # ── 消费 ──────────────────────────────────────────────

    def _lock_for(self, job_types: Iterable[JobType]) -> asyncio.Lock:
        slot = frozenset(job_types)
        if slot not in self._drain_locks:
            self._drain_locks[slot] = asyncio.Lock()
        return self._drain_locks[slot]

    async def drain(
        self,
        max_batch: Optional[int] = None,
        budget: Optional[float] = None,
        job_types: Sequence[JobType] = ALL_JOB_TYPES,
    ) -> DrainSummary:
        """
        执行一轮任务消费

        Args:
            max_batch: 本轮最多处理的 key 数，超出部分拆分为新的 PENDING 任务
            budget: 墙钟预算（秒），超时后不再启动新的小批，未开始的 key 重新入队
            job_types: 允许认领的任务类型

        被取消或中途出错时，已认领但未收尾的任务推进到 FAILED，
        未完成的 key 重新入队，不会停留在 RUNNING。
        """
        max_batch = max_batch or self.batch_size
        budget = self.drain_budget if budget is None else budget
        summary = DrainSummary()
        started = self._clock.monotonic()
        deadline = started + budget if budget else None

        async with self._lock_for(job_types):
            await self._recover_expired(summary)

            work: List[Tuple[BackgroundJob, List[str]]] = []
            outcomes: Dict[str, List[KeyOutcome]] = defaultdict(list)
            not_started: Dict[str, List[str]] = defaultdict(list)
            finalized = set()
            try:
                await self._claim(max_batch, job_types, summary, work)
                items: List[Tuple[BackgroundJob, str]] = [
                    (job, key) for job, keys in work for key in keys
                ]

                total_batches = (len(items) + self.sub_batch_size - 1) // self.sub_batch_size
                for index in range(0, len(items), self.sub_batch_size):
                    if deadline is not None and self._clock.monotonic() >= deadline:
                        summary.timed_out = True
                        for job, key in items[index:]:
                            not_started[job.id].append(key)
                        logger.warning(
                            f"⚠️ drain 超出墙钟预算 {budget}s，剩余 {len(items) - index} 个 key 重新入队"
                        )
                        break

                    batch = items[index:index + self.sub_batch_size]
                    logger.info(
                        f"🔄 处理刷新小批 {index // self.sub_batch_size + 1}/{total_batches}（{len(batch)} 个 key）"
                    )
                    results = await asyncio.gather(
                        *(self._guarded_refresh(job.namespace, key) for job, key in batch)
                    )
                    for (job, _), outcome in zip(batch, results):
                        outcomes[job.id].append(outcome)

                    more = index + self.sub_batch_size < len(items)
                    if more and any(o.attempted for o in results):
                        await self._clock.sleep(self.sub_batch_pause)

                for job, _ in work:
                    await self._finalize(job, outcomes[job.id], not_started[job.id], summary)
                    finalized.add(job.id)
            finally:
                for job, keys in work:
                    if job.id not in finalized:
                        await self._release(job, keys, outcomes[job.id])

        summary.duration_ms = round((self._clock.monotonic() - started) * 1000, 1)
        if summary.jobs:
            logger.info(
                f"✅ drain 完成: 任务 {summary.jobs} 个，处理 {summary.processed}，"
                f"更新 {summary.updated}，失败 {summary.failed}，延后 {summary.deferred}"
            )
        return summary

    async def _claim(
        self,
        max_batch: int,
        job_types: Sequence[JobType],
        summary: DrainSummary,
        work: List[Tuple[BackgroundJob, List[str]]],
    ) -> None:
        """认领到的任务立即登记进 work，保证中断时也能被收尾"""
        capacity = max_batch
        while capacity > 0:
            job = await self._jobs.claim_next(self._clock.now(), job_types)
            if job is None:
                break
            summary.jobs += 1
            if job.job_type == JobType.OPTIMIZE:
                await self._run_optimize(job)
                continue

            keys = list(dict.fromkeys(job.keys))
            work.append((job, keys))
            if job.job_type == JobType.FULL_REFRESH and not keys:
                keys.extend(await self._cache.stale_keys(job.namespace, self._clock.now(), capacity))
            if len(keys) > capacity:
                overflow = keys[capacity:]
                del keys[capacity:]
                spawned = await self._spawn(job, overflow, JobStatus.PENDING, timedelta(0), "overflow")
                summary.requeued += len(overflow)
                summary.spawned_jobs.append(spawned.id)
            capacity -= len(keys)

    async def _release(
        self, job: BackgroundJob, keys: List[str], outcomes: List[KeyOutcome]
    ) -> None:
        """drain 中断：任务推进到 FAILED，未完成的 key 通过正常入队路径重新入队"""
        settled = {
            o.key for o in outcomes
            if o.status == UPDATED or (o.status == FAILED and not o.retryable)
        }
        remaining = [k for k in keys if k not in settled]
        try:
            job.status = JobStatus.FAILED
            job.completed_at = self._clock.now()
            job.errors = [o.error for o in outcomes if o.error] + ["drain 中断"]
            await self._jobs.save(job)
            if remaining:
                await self.enqueue(job.namespace, remaining, job.priority, reason="interrupted")
        except Exception as exc:
            logger.error(f"中断任务收尾失败 {job.id}: {exc}")
            return
        logger.warning(f"⚠️ drain 中断，任务 {job.id} 已标记失败，{len(remaining)} 个 key 重新入队")

    async def _recover_expired(self, summary: DrainSummary) -> None:
        """租约过期的 RUNNING 任务推进到 FAILED，其 key 重新入队"""
        expired = await self._jobs.expire_running(self._stale_before(), self._clock.now())
        for job in expired:
            logger.warning(
                f"⚠️ 任务 {job.id} 运行超过租约 {self.running_lease}，视为中断"
            )
            if job.keys and job.job_type != JobType.OPTIMIZE:
                result = await self.enqueue(job.namespace, job.keys, job.priority, reason="lease_expired")
                if result.job_id and result.added:
                    summary.spawned_jobs.append(result.job_id)
                    summary.requeued += len(result.added)

    async def _guarded_refresh(self, namespace: str, key: str) -> KeyOutcome:
        async with self._semaphore:
            return await self.refresh_key(namespace, key)

    async def refresh_key(self, namespace: str, key: str) -> KeyOutcome:
        """按固定顺序依次尝试数据源，直到一个成功"""
        providers = self.providers_for(namespace)
        if not providers:
            return KeyOutcome(key, FAILED, error=f"命名空间 {namespace} 没有可用数据源", error_kind="no_provider")

        attempted = False
        retryable = False
        last_error: Optional[ProviderError] = None
        for provider in providers:
            decision = await self._limiter.try_acquire(provider.source)
            if not decision.allowed:
                continue
            attempted = True
            start = self._clock.monotonic()
            try:
                value = await asyncio.wait_for(provider.fetch(key), timeout=provider.timeout)
            except asyncio.TimeoutError:
                error = Unreachable(provider.name, key, "调用超时")
            except ProviderError as exc:
                error = exc
            except Exception as exc:
                error = Unreachable(provider.name, key, f"未预期的错误: {exc}")
            else:
                elapsed_ms = (self._clock.monotonic() - start) * 1000
                self.upstream_stats.record_success(provider.name, elapsed_ms)
                return await self._store(namespace, key, provider, value)
            finally:
                if decision.degraded:
                    await self._limiter.record_usage(provider.source)

            elapsed_ms = (self._clock.monotonic() - start) * 1000
            self.upstream_stats.record_failure(provider.name, error.kind, elapsed_ms)
            logger.warning(f"数据源获取失败（来源：{provider.name}）: {error}")
            retryable = retryable or error.retryable
            last_error = error

        if not attempted:
            return KeyOutcome(key, DEFERRED, error_kind="budget_exhausted")
        return KeyOutcome(
            key,
            FAILED,
            provider=last_error.provider,
            error=str(last_error),
            error_kind=last_error.kind,
            retryable=retryable,
            attempted=True,
        )

    async def _store(
        self, namespace: str, key: str, provider: UpstreamProvider, value: dict
    ) -> KeyOutcome:
        now = self._clock.now()
        ttl = timedelta(seconds=self._ttls.get(namespace, 300))
        try:
            await self._cache.upsert(CacheEntry(
                namespace=namespace,
                key=key,
                value=value,
                source=provider.value_source,
                confidence=provider.confidence,
                created_at=now,
                expires_at=now + ttl,
                provider=provider.name,
            ))
            await self._history.append(HistoryRecord(
                namespace=namespace,
                key=key,
                value=value,
                source=provider.value_source,
                provider=provider.name,
                observed_at=now,
            ))
        except Exception as exc:
            logger.error(f"缓存写入失败 {namespace}:{key}: {exc}")
            return KeyOutcome(
                key, FAILED, provider=provider.name,
                error=f"缓存写入失败 {key}: {exc}", error_kind="store_error",
                retryable=True, attempted=True,
            )
        logger.debug(f"已刷新 {namespace}:{key}（来源：{provider.name}）")
        return KeyOutcome(key, UPDATED, provider=provider.name, attempted=True)

    async def _spawn(
        self,
        parent: BackgroundJob,
        keys: List[str],
        status: JobStatus,
        delay: timedelta,
        reason: str,
        attempts: Optional[int] = None,
    ) -> BackgroundJob:
        """失败或延后的 key 生成新任务，原任务本身不会被复活"""
        now = self._clock.now()
        job = BackgroundJob(
            job_type=JobType.REFRESH_KEYS,
            namespace=parent.namespace,
            keys=keys,
            priority=parent.priority,
            status=status,
            attempts=max(parent.attempts - 1, 0) if attempts is None else attempts,
            parent_id=parent.id,
            reason=reason,
            scheduled_at=now + delay,
            created_at=now,
        )
        await self._jobs.insert(job)
        return job

    async def _finalize(
        self,
        job: BackgroundJob,
        outcomes: List[KeyOutcome],
        not_started: List[str],
        summary: DrainSummary,
    ) -> None:
        updated = [o for o in outcomes if o.status == UPDATED]
        failed = [o for o in outcomes if o.status == FAILED]
        deferred = [o.key for o in outcomes if o.status == DEFERRED]
        errors = [o.error for o in failed if o.error]

        summary.processed += len(updated) + len(failed)
        summary.updated += len(updated)
        summary.failed += len(failed)
        summary.deferred += len(deferred)
        summary.errors.extend(errors)
        for outcome in failed:
            kind = outcome.error_kind or "error"
            summary.error_kinds[kind] = summary.error_kinds.get(kind, 0) + 1

        if deferred:
            retry = await self._spawn(
                job, deferred, JobStatus.RETRY_SCHEDULED, self.retry_delay, "rate_limited"
            )
            summary.spawned_jobs.append(retry.id)
            logger.info(f"⏳ {len(deferred)} 个 key 因限流延后到 {retry.scheduled_at.isoformat()}")

        if not_started:
            spawned = await self._spawn(job, not_started, JobStatus.PENDING, timedelta(0), "budget_exceeded")
            summary.requeued += len(not_started)
            summary.spawned_jobs.append(spawned.id)

        retry_keys = [o.key for o in failed if o.retryable]
        if retry_keys and job.attempts < self.max_attempts:
            spawned = await self._spawn(
                job, retry_keys, JobStatus.PENDING, self.failure_backoff, "retry", attempts=job.attempts
            )
            summary.spawned_jobs.append(spawned.id)

        job.status = JobStatus.FAILED if failed and not updated else JobStatus.COMPLETED
        job.completed_at = self._clock.now()
        job.errors = errors
        job.result = {
            "processed": len(updated) + len(failed),
            "updated": len(updated),
            "failed": len(failed),
            "deferred": len(deferred),
            "requeued": len(not_started),
        }
        await self._jobs.save(job)

    # ── 维护任务 ──────────────────────────────────────────

    async def _run_optimize(self, job: BackgroundJob) -> None:
        now = self._clock.now()
        try:
            pruned_history = await self._history.prune(now - self.history_retention)
            pruned_jobs = await self._jobs.prune_finished(now - self.job_retention)
        except Exception as exc:
            logger.error(f"缓存维护任务失败: {exc}")
            job.status = JobStatus.FAILED
            job.errors = [str(exc)]
        else:
            logger.info(f"🧹 缓存维护完成：清理历史记录 {pruned_history} 条，已结束任务 {pruned_jobs} 个")
            job.status = JobStatus.COMPLETED
            job.result = {"pruned_history": pruned_history, "pruned_jobs": pruned_jobs}
        job.completed_at = self._clock.now()
        await self._jobs.save(job)
