"""
服务上下文
按配置显式构造并装配全部组件（存储、限流、数据源、调度、解析、健康聚合、后台循环），
在应用生命周期内通过 app.state 注入路由，不使用模块级单例
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Mapping, Optional, Sequence

import httpx

from token_cache.config import CacheServiceSettings
from token_cache.db import DatabaseConnections
from token_cache.layers.acquisition import (
    SOURCE_COINGECKO,
    SOURCE_JUPITER,
    UpstreamProvider,
    UpstreamStats,
    build_providers,
)
from token_cache.layers.cache import CacheStore, MemoryCacheStore, MongoCacheStore
from token_cache.layers.clock import Clock
from token_cache.layers.fallback import SyntheticGenerator
from token_cache.layers.health import HealthAggregator
from token_cache.layers.history import HistoryStore, MemoryHistoryStore, MongoHistoryStore
from token_cache.layers.jobs import JobStore, MemoryJobStore, MongoJobStore
from token_cache.layers.ratelimit import (
    MemoryRateLimitBackend,
    RateLimitBackend,
    RateLimiter,
    RedisRateLimitBackend,
)
from token_cache.layers.resolver import CacheResolver, LookupStats
from token_cache.layers.scheduler import MAINTENANCE_NAMESPACE, RefreshScheduler
from token_cache.layers.ticker import PeriodicTask, Ticker
from token_cache.models.entities import (
    NAMESPACE_PRICES,
    NAMESPACE_TOKENS,
    NAMESPACES,
    JobPriority,
    JobType,
)

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    settings: CacheServiceSettings
    clock: Clock
    cache_store: CacheStore
    history_store: HistoryStore
    job_store: JobStore
    limiter: RateLimiter
    upstream_stats: UpstreamStats
    lookup_stats: LookupStats
    scheduler: RefreshScheduler
    resolvers: Dict[str, CacheResolver]
    health: HealthAggregator
    connections: Optional[DatabaseConnections] = None
    http_client: Optional[httpx.AsyncClient] = None
    tasks: List[PeriodicTask] = field(default_factory=list)
    backend: str = "memory"

    def resolver(self, namespace: str) -> Optional[CacheResolver]:
        return self.resolvers.get(namespace)

    async def start_background(self) -> None:
        for task in self.tasks:
            task.start()

    async def stop_background(self) -> None:
        for task in self.tasks:
            await task.stop()


def _select_stores(connections: Optional[DatabaseConnections]):
    if connections is not None and connections.mongo_db is not None:
        db = connections.mongo_db
        return MongoCacheStore(db), MongoHistoryStore(db), MongoJobStore(db), "mongodb"
    logger.warning("⚠️ MongoDB 不可用，缓存 / 历史 / 任务队列使用进程内存储")
    return MemoryCacheStore(), MemoryHistoryStore(), MemoryJobStore(), "memory"


def _select_rate_backend(connections: Optional[DatabaseConnections]) -> RateLimitBackend:
    if connections is not None and connections.redis is not None:
        return RedisRateLimitBackend(connections.redis)
    logger.warning("⚠️ Redis 不可用，限流计数使用进程内存储")
    return MemoryRateLimitBackend()


def _background_tasks(
    settings: CacheServiceSettings,
    clock: Clock,
    scheduler: RefreshScheduler,
    health: HealthAggregator,
) -> List[PeriodicTask]:
    drain_ticker = Ticker(settings.DRAIN_INTERVAL_SECONDS, clock)
    # 解析层上报缺失 key 时提前唤醒 drain 循环
    scheduler.add_listener(drain_ticker.wake)

    async def optimize():
        await scheduler.enqueue_job(MAINTENANCE_NAMESPACE, JobType.OPTIMIZE, JobPriority.LOW)

    return [
        PeriodicTask("cache-drain", drain_ticker, scheduler.drain),
        PeriodicTask("cache-health", Ticker(settings.HEALTH_INTERVAL_SECONDS, clock), health.sample),
        PeriodicTask("cache-optimize", Ticker(settings.OPTIMIZE_INTERVAL_SECONDS, clock), optimize),
    ]


async def build_context(
    settings: CacheServiceSettings,
    connections: Optional[DatabaseConnections] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Optional[Clock] = None,
    providers: Optional[Mapping[str, Sequence[UpstreamProvider]]] = None,
    stores: Optional[tuple] = None,
    rate_backend: Optional[RateLimitBackend] = None,
) -> ServiceContext:
    """
    构造服务上下文

    Args:
        settings: 服务配置
        connections: 已初始化的数据库连接；为空或连接失败时降级为内存存储
        http_client: 数据源使用的 HTTP 客户端，为空时新建
        clock: 时钟，测试中传入 ManualClock
        providers: 覆盖默认数据源装配（按命名空间）
        stores: 覆盖 (cache_store, history_store, job_store)
        rate_backend: 覆盖限流计数后端
    """
    clock = clock or Clock()

    if stores is not None:
        cache_store, history_store, job_store = stores
        backend = "custom"
    else:
        cache_store, history_store, job_store, backend = _select_stores(connections)

    for store in (cache_store, history_store, job_store):
        try:
            await store.ensure_indexes()
        except Exception as exc:
            logger.warning(f"⚠️ 索引创建失败: {exc}")

    limiter = RateLimiter(
        rate_backend or _select_rate_backend(connections),
        limits={
            SOURCE_JUPITER: settings.JUPITER_REQUESTS_PER_WINDOW,
            SOURCE_COINGECKO: settings.COINGECKO_REQUESTS_PER_WINDOW,
        },
        window_seconds=settings.RATE_LIMIT_WINDOW_MINUTES * 60,
        clock=clock,
    )

    if http_client is None and providers is None:
        http_client = httpx.AsyncClient(
            headers={"User-Agent": settings.PROVIDER_USER_AGENT, "Accept": "application/json"},
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    if providers is None:
        providers = build_providers(settings, http_client)

    upstream_stats = UpstreamStats()
    scheduler = RefreshScheduler(
        cache_store=cache_store,
        history_store=history_store,
        job_store=job_store,
        limiter=limiter,
        providers=providers,
        ttls={
            NAMESPACE_PRICES: settings.PRICE_CACHE_TTL,
            NAMESPACE_TOKENS: settings.TOKEN_CACHE_TTL,
        },
        clock=clock,
        upstream_stats=upstream_stats,
        batch_size=settings.REFRESH_BATCH_SIZE,
        sub_batch_size=settings.REFRESH_SUB_BATCH_SIZE,
        sub_batch_pause=settings.REFRESH_SUB_BATCH_PAUSE_SECONDS,
        max_concurrency=settings.REFRESH_MAX_CONCURRENCY,
        retry_delay=timedelta(minutes=settings.REFRESH_RETRY_DELAY_MINUTES),
        failure_backoff=timedelta(minutes=settings.REFRESH_FAILURE_BACKOFF_MINUTES),
        max_attempts=settings.REFRESH_MAX_ATTEMPTS,
        coalesce_window=timedelta(seconds=settings.REFRESH_COALESCE_SECONDS),
        running_lease=timedelta(seconds=settings.RUNNING_LEASE_SECONDS),
        drain_budget=settings.DRAIN_BUDGET_SECONDS,
        history_retention=timedelta(hours=settings.HISTORY_RETENTION_HOURS),
        job_retention=timedelta(hours=settings.JOB_RETENTION_HOURS),
    )

    lookup_stats = LookupStats()
    resolvers = {
        namespace: CacheResolver(
            namespace,
            cache_store,
            history_store,
            scheduler,
            SyntheticGenerator(namespace, clock),
            clock,
            history_window=timedelta(minutes=settings.HISTORY_WINDOW_MINUTES),
            stats=lookup_stats,
        )
        for namespace in NAMESPACES
    }

    health = HealthAggregator(
        cache_store,
        history_store,
        job_store,
        limiter,
        lookup_stats,
        upstream_stats,
        provider_sources={
            provider.name: provider.source
            for items in providers.values()
            for provider in items
        },
        clock=clock,
        stale_window=timedelta(minutes=settings.STALE_WINDOW_MINUTES),
    )

    context = ServiceContext(
        settings=settings,
        clock=clock,
        cache_store=cache_store,
        history_store=history_store,
        job_store=job_store,
        limiter=limiter,
        upstream_stats=upstream_stats,
        lookup_stats=lookup_stats,
        scheduler=scheduler,
        resolvers=resolvers,
        health=health,
        connections=connections,
        http_client=http_client,
        backend=backend,
    )
    if settings.BACKGROUND_ENABLED:
        context.tasks = _background_tasks(settings, clock, scheduler, health)
    logger.info(
        f"✅ 服务上下文就绪：存储 {backend}，数据源 "
        + ", ".join(f"{ns}={[p.name for p in items]}" for ns, items in providers.items())
    )
    return context
