"""健康检查路由"""

import time
from pathlib import Path

from fastapi import APIRouter, Depends

from token_cache import __version__
from token_cache.routers.deps import get_context
from token_cache.services.context import ServiceContext

router = APIRouter(tags=["健康检查"])


def _read_version() -> str:
    try:
        vf = Path(__file__).parent.parent.parent / "VERSION"
        if vf.exists():
            return vf.read_text(encoding="utf-8").strip()
    except OSError:
        pass
    return __version__


async def _databases(context: ServiceContext) -> dict:
    if context.connections is None:
        return {"mongodb": {"status": "disabled"}, "redis": {"status": "disabled"}}
    return await context.connections.check_health()


@router.get("/health")
async def health(context: ServiceContext = Depends(get_context)):
    """服务健康检查"""
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": _read_version(),
            "timestamp": int(time.time()),
            "service": "Token Cache Service",
            "backend": context.backend,
            "databases": await _databases(context),
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(context: ServiceContext = Depends(get_context)):
    """Kubernetes readiness probe"""
    return {"ready": True, "backend": context.backend}
