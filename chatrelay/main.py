"""
chatrelay.main
~~~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。

``create_app()`` 可以注入一个现成的 ``Core``（测试使用 ``MemoryBackend``）；
不注入时在 lifespan 中按 ``settings.BACKEND`` 构造。
"""
from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.types import ASGIApp, Receive, Scope, Send

from chatrelay.api import connections, events, profiles, users
from chatrelay.backends.memory import MemoryBackend
from chatrelay.backends.mongo import MongoBackend
from chatrelay.core.config import Settings, get_settings
from chatrelay.core.errors import RelayError
from chatrelay.core.logging import get_logger, request_id_ctx_var, setup_logging
from chatrelay.core.rate_limit import limiter
from chatrelay.db import close_mongo, connect_mongo, ping
from chatrelay.schemas.api_response import ApiResponse
from chatrelay.services.relay_core import Core

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 请求追踪 ──────────────────────────────────────────────────────────

class RequestIdMiddleware:
    """为每个 HTTP 请求生成 ``req-xxxxxxxx`` 追踪 ID，写入日志上下文与响应头。

    纯 ASGI 实现，不会缓冲 SSE 响应体。
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = f"req-{uuid.uuid4().hex[:8]}"
        token = request_id_ctx_var.set(request_id)

        async def send_with_request_id(message) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", []).append(
                    (b"x-request-id", request_id.encode("latin-1")),
                )
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_ctx_var.reset(token)


# ── 生命周期 ──────────────────────────────────────────────────────────

def build_core(settings: Settings) -> Core:
    """按配置选择持久化后端并构造 ``Core``。"""
    if settings.BACKEND == "memory":
        backend = MemoryBackend()
    else:
        backend = MongoBackend(connect_mongo(settings))
    return Core(backend=backend, settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    settings: Settings = app.state.settings
    if getattr(app.state, "core", None) is None:
        app.state.core = build_core(settings)
    core: Core = app.state.core

    # 启动失败不会抛出：服务照常运行，/health 中 ready=false
    await core.start()
    logger.info(
        "🚀 应用已启动 | env=%s | backend=%s | ready=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.BACKEND,
        core.ready,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    await core.close()
    await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

def create_app(core: Core | None = None, settings: Settings | None = None) -> FastAPI:
    """构造应用实例。

    Args:
        core: 预先构造的中继核心；为 None 时在 lifespan 中按配置构造。
        settings: 配置；为 None 时使用 ``core.settings`` 或全局配置。
    """
    settings = settings or (core.settings if core is not None else get_settings())

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="聊天中继后端核心 API",
        version=settings.VERSION,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.core = core
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # ── CORS 中间件 ──
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
        # prod 环境：前端与后端同源部署，不放开跨域
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[],
            allow_methods=["GET", "POST", "PATCH", "DELETE"],
            allow_headers=["*"],
        )
    app.add_middleware(RequestIdMiddleware)

    # ── 路由挂载 ──
    app.include_router(users.router, prefix="/api", tags=["User"])
    app.include_router(connections.router, prefix="/api", tags=["Connection"])
    app.include_router(profiles.router, prefix="/api", tags=["Connection Profile"])
    app.include_router(events.router, prefix="/api", tags=["Event Stream"])

    # ── 全局异常处理器 ──

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        """业务异常 → 对应 HTTP 状态码 + ``ApiResponse.fail()``。"""
        logger.info("请求失败: %s %s -> %s %s", request.method, request.url.path, exc.code, exc.message)
        response = ApiResponse.fail(msg=exc.message, code=exc.http_status, data={"error": exc.code})
        return JSONResponse(status_code=exc.http_status, content=response.model_dump())

    @app.exception_handler(NotImplementedError)
    async def not_implemented_handler(request: Request, exc: NotImplementedError) -> JSONResponse:
        """连接协议没有实现请求的能力。"""
        response = ApiResponse.fail(msg=str(exc), code=501, data=None)
        return JSONResponse(status_code=501, content=response.model_dump())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。

        避免 FastAPI 默认返回 HTML 错误页面，保持 JSON 响应一致性。
        """
        logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
        # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
        detail = str(exc) if not settings.is_prod else "服务器内部错误"
        response = ApiResponse.fail(msg=detail, code=500, data=None)
        return JSONResponse(status_code=500, content=response.model_dump())

    @app.get("/health", tags=["System"])
    async def health_check(request: Request) -> JSONResponse:
        """验证服务是否正常运行，以及中继核心是否已完成启动加载。"""
        relay_core: Core | None = request.app.state.core
        content = {
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "backend": settings.BACKEND,
            "ready": bool(relay_core and relay_core.ready),
            "users": len(relay_core.users) if relay_core else 0,
        }
        if settings.BACKEND == "mongo":
            content["database"] = await ping(settings)
        return JSONResponse(content=content)
    return app


app: FastAPI = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "chatrelay.main:app",
        host=_settings.HOST,
        port=_settings.PORT,
        reload=_settings.reload,  # 仅 dev 环境开启热重载
        log_level=_settings.effective_log_level.lower(),
    )
