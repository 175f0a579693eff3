"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import LocaleMiddleware, LoggingMiddleware, RequestIDMiddleware
from api.routes import checkout as checkout_routes
from api.routes import wallet as wallet_routes
from application.services.checkout_service import CheckoutService
from core.config import settings
from core.exceptions import register_exception_handlers
from core.i18n import t
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from core.settings import checkout_settings
from infrastructure.cache import (
    InMemoryCheckoutSessionStore,
    RedisCheckoutSessionStore,
    init_redis_cache,
    shutdown_redis_cache,
)
from infrastructure.external.notifications import create_notifier
from infrastructure.external.payments import get_qr_renderer
from infrastructure.external.store import create_store


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


async def _close(resource, name: str) -> None:
    close = getattr(resource, "aclose", None)
    if callable(close):
        await close()
        logger.info("resource_closed", resource=name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    store = create_store(settings.store)
    notifier = create_notifier(settings.notification)

    # 会话状态：配置了 Redis 则持久化，否则进程内存
    if settings.redis.url:
        cache = await init_redis_cache()
        sessions = RedisCheckoutSessionStore(cache, ttl=settings.redis.session_ttl)
        logger.info("session_store_selected", provider="redis")
    else:
        sessions = InMemoryCheckoutSessionStore()
        logger.info("session_store_selected", provider="inmemory")

    app.state.checkout_service = CheckoutService(store, notifier, sessions, config=checkout_settings)
    app.state.qr_renderer = get_qr_renderer()
    logger.info(
        "checkout_initialized",
        store=type(store).__name__,
        notifier=type(notifier).__name__,
        currency=checkout_settings.currency,
    )

    yield

    # 关闭时的清理工作：先停确认流程和后台通知，再关闭客户端
    await app.state.checkout_service.aclose()
    await _close(store, "store")
    await _close(notifier, "notifier")
    if settings.redis.url:
        await shutdown_redis_cache()
        logger.info("redis_cache_shutdown")
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Checkout settlement engine: pricing, orders, payment settlement and confirmation",
)

# 添加中间件（注意顺序：从下往上执行）
app.add_middleware(LocaleMiddleware)
app.add_middleware(LoggingMiddleware)
# Request ID 最后添加、最先执行，为日志中间件提供 request_id
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)

# 注册路由
app.include_router(checkout_routes.router, prefix="/api/v1")
app.include_router(wallet_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc",
        },
        message=t("welcome", default="Welcome"),
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"}, message=t("health.ok", default="OK"))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )
