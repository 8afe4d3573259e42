"""路由依赖注入：从 app.state 取服务上下文"""

from fastapi import Depends, HTTPException, Request, status

from token_cache.layers.resolver import CacheResolver
from token_cache.models.entities import NAMESPACES
from token_cache.services.context import ServiceContext


def get_context(request: Request) -> ServiceContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="服务尚未就绪")
    return context


def check_namespace(namespace: str) -> str:
    if namespace not in NAMESPACES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"未知的缓存命名空间: {namespace}（可选: {', '.join(NAMESPACES)}）",
        )
    return namespace


def get_resolver(
    namespace: str = Depends(check_namespace),
    context: ServiceContext = Depends(get_context),
) -> CacheResolver:
    return context.resolvers[namespace]
