"""
缓存查询路由
POST /api/lookup/{namespace}   - 分级查询（缓存 → 历史 → 合成数据）
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from token_cache.layers.resolver import CacheResolver
from token_cache.models.response import ApiResponse
from token_cache.routers.deps import get_context, get_resolver
from token_cache.services.context import ServiceContext

router = APIRouter(prefix="/api/lookup", tags=["缓存查询"])


class LookupRequest(BaseModel):
    keys: List[str] = Field(..., description="要查询的 key 列表（代币地址）")
    force_refresh: bool = Field(default=False, description="跳过新鲜缓存，强制触发后台刷新")

    @field_validator("keys")
    @classmethod
    def _non_empty_keys(cls, keys: List[str]) -> List[str]:
        keys = [key.strip() for key in keys]
        if any(not key for key in keys):
            raise ValueError("key 不能为空字符串")
        return keys


@router.post("/{namespace}", response_model=ApiResponse)
async def lookup(
    body: LookupRequest,
    resolver: CacheResolver = Depends(get_resolver),
    context: ServiceContext = Depends(get_context),
):
    """查询一组 key 的当前值；部分缺失不会返回错误，只体现在 cache_status 上"""
    limit = context.settings.MAX_LOOKUP_KEYS
    if len(body.keys) > limit:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"单次最多查询 {limit} 个 key",
        )
    result = await resolver.resolve(body.keys, force_refresh=body.force_refresh)
    return ApiResponse.ok(
        data=result.to_payload(),
        message=f"查询完成（{result.cache_status.value}）",
    )
