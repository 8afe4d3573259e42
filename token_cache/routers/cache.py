"""
缓存管理路由
GET  /api/cache/health    - 缓存健康分（最近一次采样）
GET  /api/cache/stats     - 缓存统计
GET  /api/cache/jobs      - 最近的后台任务
"""

from fastapi import APIRouter, Depends, Query

from token_cache.models.response import ApiResponse
from token_cache.routers.deps import get_context
from token_cache.services.context import ServiceContext

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/health", response_model=ApiResponse)
async def cache_health(
    history: int = Query(default=0, ge=0, le=120, description="附带最近 N 次采样"),
    context: ServiceContext = Depends(get_context),
):
    """获取缓存健康分；尚无采样时立即采样一次"""
    snapshot = context.health.latest or await context.health.sample()
    data = snapshot.model_dump(mode="json")
    if history:
        data["history"] = [
            {"recorded_at": s.recorded_at.isoformat(), "overall_score": s.overall_score}
            for s in context.health.history(history)
        ]
    return ApiResponse.ok(data=data, message=f"缓存状态: {snapshot.status}")


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(context: ServiceContext = Depends(get_context)):
    """获取缓存统计信息（存储规模、新鲜度、限流窗口、任务状态）"""
    now = context.clock.now()
    stale_window = context.health.stale_window
    namespaces = {}
    for namespace in context.resolvers:
        counts = await context.cache_store.freshness_counts(now, stale_window, namespace=namespace)
        counts["history_records"] = await context.history_store.count(namespace)
        namespaces[namespace] = counts

    stats = context.lookup_stats
    windows = await context.limiter.snapshot()
    return ApiResponse.ok(data={
        "backend": context.backend,
        "namespaces": namespaces,
        "lookups": {
            "requests": stats.requests,
            "key_hits": stats.key_hits,
            "key_misses": stats.key_misses,
            "hit_rate": round(stats.hit_rate, 4),
            "avg_response_time_ms": round(stats.avg_response_ms, 2),
            "by_status": dict(stats.by_status),
        },
        "rate_limits": [w.to_dict() for w in windows],
        "providers": context.upstream_stats.summary(),
        "jobs": await context.job_store.counts(),
    })


@router.get("/jobs", response_model=ApiResponse)
async def recent_jobs(
    limit: int = Query(default=20, ge=1, le=200),
    context: ServiceContext = Depends(get_context),
):
    """最近创建的后台任务"""
    jobs = await context.job_store.recent(limit)
    return ApiResponse.ok(data={
        "count": len(jobs),
        "jobs": [job.model_dump(mode="json") for job in jobs],
    })
