"""
缓存刷新路由
POST /api/refresh/{namespace}   - 手动触发刷新（入队并可立即执行一轮 drain）
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from token_cache.models.entities import JobPriority
from token_cache.models.response import ApiResponse
from token_cache.routers.deps import check_namespace, get_context
from token_cache.services.context import ServiceContext
from token_cache.services.refresh_service import RefreshService

router = APIRouter(prefix="/api/refresh", tags=["缓存刷新"])


class RefreshRequest(BaseModel):
    batch_size: Optional[int] = Field(default=None, ge=1, le=100, description="本次最多处理的 key 数")
    priority: JobPriority = Field(default=JobPriority.NORMAL)
    specific_keys: Optional[List[str]] = Field(default=None, description="指定刷新的 key，为空时整体刷新")
    drain_now: bool = Field(default=True, description="是否立即执行一轮 drain")


@router.post("/{namespace}", response_model=ApiResponse)
async def trigger_refresh(
    body: RefreshRequest,
    namespace: str = Depends(check_namespace),
    context: ServiceContext = Depends(get_context),
):
    """手动触发缓存刷新；所有数据源额度耗尽时返回 429 和建议重试时间"""
    svc = RefreshService(context.scheduler, context.limiter, context.clock)
    keys = [k.strip() for k in body.specific_keys or [] if k and k.strip()]
    outcome = await svc.trigger(
        namespace,
        batch_size=body.batch_size or context.settings.REFRESH_BATCH_SIZE,
        priority=body.priority,
        specific_keys=keys,
        drain_now=body.drain_now,
    )

    if outcome.rate_limited:
        payload = ApiResponse.fail(
            error="rate_limited",
            message=f"数据源调用额度已耗尽，请在 {outcome.next_available_time.isoformat()} 后重试",
            data=outcome.to_dict(),
        )
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=payload.model_dump(mode="json"),
            headers={"Retry-After": str(outcome.retry_after_seconds)},
        )

    data = outcome.to_dict()
    if outcome.drained:
        message = f"刷新完成：更新 {data['updated']} 个，失败 {data['failed']} 个"
    else:
        message = "刷新任务已入队"
    return ApiResponse.ok(data=data, message=message)
