"""
代币缓存服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn token_cache.main:app --host 0.0.0.0 --port 8002
    python -m token_cache.main
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from token_cache import __version__
from token_cache.config import CacheServiceSettings, get_settings
from token_cache.db import DatabaseConnections
from token_cache.models.response import ApiResponse
from token_cache.routers import cache, health, lookup, refresh
from token_cache.services.context import ServiceContext, build_context

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[CacheServiceSettings] = None,
    context: Optional[ServiceContext] = None,
) -> FastAPI:
    """
    构造应用实例

    Args:
        settings: 服务配置，默认读取环境变量
        context: 预先构造好的服务上下文（测试注入）；为空时在启动钩子中按配置构造
    """
    settings = settings or (context.settings if context else get_settings())

    # ── 生命周期管理 ──────────────────────────────────────
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用启动/关闭生命周期钩子"""
        logger.info("=" * 60)
        logger.info(f"🚀 Token Cache Service v{__version__} 启动中")
        logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
        logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
        logger.info("=" * 60)

        ctx = context
        owned = ctx is None
        if owned:
            # 初始化数据库连接（失败不阻断启动，降级运行）
            connections = DatabaseConnections(settings)
            mongo_ok = await connections.init_mongodb()
            redis_ok = await connections.init_redis()

            if mongo_ok and redis_ok:
                logger.info("✅ 所有数据库连接就绪")
            elif mongo_ok:
                logger.warning("⚠️ Redis 不可用，限流计数降级为进程内模式")
            elif redis_ok:
                logger.warning("⚠️ MongoDB 不可用，缓存降级为进程内模式")
            else:
                logger.warning("⚠️ 数据库均不可用，降级为进程内缓存模式")

            ctx = await build_context(settings, connections)

        app.state.context = ctx
        await ctx.start_background()

        yield

        logger.info("🔄 代币缓存服务正在关闭...")
        await ctx.stop_background()
        if owned:
            if ctx.http_client is not None:
                await ctx.http_client.aclose()
            if ctx.connections is not None:
                await ctx.connections.close()
        logger.info("✅ 代币缓存服务已关闭")

    # ── 应用实例 ──────────────────────────────────────────
    app = FastAPI(
        title="Token Cache Service",
        description=(
            "代币价格 / 元数据分级缓存服务，提供以下功能：\n"
            "- ⚡ 分级查询（新鲜缓存 → 近期历史 → 合成数据），查询路径从不等待上游\n"
            "- 🔄 后台刷新队列（优先级、合并入队、小批限速、失败重试）\n"
            "- 🚦 按数据源的调用预算限流（Jupiter / CoinGecko）\n"
            "- 📊 缓存健康分（命中率 / 上游健康 / 数据新鲜度）\n\n"
            "**分层架构**\n"
            "```\n"
            "Acquisition Layer  ← 从数据提供商拉取原始数据\n"
            "RateLimit Layer    ← 每个数据源的调用预算\n"
            "Cache / History    ← MongoDB 或进程内存储\n"
            "Resolver           ← 分级查询\n"
            "Scheduler          ← 后台刷新任务\n"
            "Health             ← 健康聚合\n"
            "```"
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ── CORS 中间件 ───────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── 请求计时中间件 ─────────────────────────────────────
    @app.middleware("http")
    async def add_process_time(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
        return response

    # ── 全局异常处理 ──────────────────────────────────────
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"未处理的异常: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ApiResponse.fail(error="内部服务错误", message=str(exc)).model_dump(mode="json"),
        )

    # ── 注册路由 ──────────────────────────────────────────
    app.include_router(health.router)
    app.include_router(lookup.router)
    app.include_router(refresh.router)
    app.include_router(cache.router)

    # ── 根路由 ───────────────────────────────────────────
    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "service": "Token Cache Service",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    _settings = get_settings()
    uvicorn.run(
        "token_cache.main:app",
        host=_settings.HOST,
        port=_settings.PORT,
        reload=_settings.DEBUG,
        log_level=_settings.LOG_LEVEL.lower(),
    )
