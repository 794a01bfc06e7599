"""
app.main
~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from app.api import chat_ws, rooms
from app.core.logging import get_logger, setup_logging
from app.core.rate_limit import limiter
from app.core.settings import settings
from app.db import close_mongo, connect_mongo
from app.db.message_repository import MessageRepository
from app.schemas.api_response import ApiResponse
from app.services.connection import ConnectionManager
from app.services.relay import RelayEngine
from app.services.room_registry import RoomRegistry

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    db = await connect_mongo()
    repo = MessageRepository(db)
    app.state.repo = repo
    app.state.relay = RelayEngine(
        registry=RoomRegistry(),
        connections=ConnectionManager(),
        store=repo,
    )
    logger.info(
        "应用已启动 | env=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    relay: RelayEngine = app.state.relay
    if relay.pending_persistence:
        logger.info("等待 %d 条消息持久化完成", relay.pending_persistence)
    await relay.drain()
    await close_mongo()
    logger.info("应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="房间制实时聊天中继 API",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)
app.state.limiter = limiter

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(rooms.router, prefix="/api", tags=["Rooms"])
app.include_router(chat_ws.router, tags=["WebSocket Chat"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(RateLimitExceeded)
async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """限流触发时返回 429 + 统一应答体。"""
    logger.warning("触发限流: %s %s -> %s", request.method, request.url.path, exc.detail)
    response = ApiResponse.fail(msg=f"请求过于频繁: {exc.detail}", code=429)
    return JSONResponse(status_code=429, content=response.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/health", tags=["System"])
async def health_check() -> JSONResponse:
    """验证服务是否正常运行。"""
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
