# src/services/api/app.py
"""
FastAPI приложение: HTTP API и realtime-хаб в одном процессе.

Endpoints (префикс /api):
- GET /health - проверка здоровья
- GET /status/maintenance - режим обслуживания
- /requests, /mechanics, /payment, /chat, /admin - см. routes
- GET /realtime/stats - статистика соединений

WebSocket:
- /ws - realtime-соединение
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any

from asyncpg.exceptions import DataError
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.common.constants import TypeMsg
from src.common.errors import AppError, ErrorKind, InternalError, ValidationFailedError
from src.common.logger import log_error, log_info, log_warning, setup_logging
from src.services.api.dependencies import (
    cleanup_dependencies,
    get_db,
    get_hub,
    get_maintenance_service,
    get_redis,
    init_dependencies,
)
from src.services.api.middleware import make_maintenance_middleware, make_timeout_middleware
from src.services.api.routes import admin, chat, mechanics, payments, requests
from src.services.realtime_ws.router import stats_router, ws_router
from src.shared.models.common import ApiResponse, HealthStatus


_started_at = time.monotonic()

_KIND_BY_HTTP_STATUS: dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION_FAILED,
    401: ErrorKind.UNAUTHENTICATED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.VALIDATION_FAILED,
    409: ErrorKind.CONFLICT,
    429: ErrorKind.RATE_LIMITED,
    503: ErrorKind.SERVICE_UNAVAILABLE,
}


# === LIFESPAN ===

async def startup() -> None:
    """
    Подключает инфраструктуру и собирает зависимости.

    PostgreSQL обязателен. Redis и RabbitMQ при недоступности
    отключаются: кэш читается из БД, события не публикуются.
    """
    from src.config import settings
    from src.infra.database import get_db as get_database, init_db
    from src.infra.event_bus import get_event_bus, init_event_bus
    from src.infra.redis_client import get_redis as get_redis_client, init_redis
    from src.services.realtime_ws.connection_manager import ConnectionManager
    from src.services.realtime_ws.hub import RealtimeHub

    setup_logging()
    await init_db()

    redis = get_redis_client()
    try:
        await init_redis()
    except Exception as e:
        await log_error(f"Redis недоступен, кэш отключён: {e}")

    event_bus = None
    if settings.rabbitmq.RABBITMQ_ENABLED:
        try:
            await init_event_bus()
            event_bus = get_event_bus()
        except Exception as e:
            await log_error(f"RabbitMQ недоступен, доменные события не публикуются: {e}")

    hub = RealtimeHub(
        ConnectionManager(),
        redis=redis if redis.is_connected else None,
        fanout=settings.realtime.REDIS_FANOUT,
        channel_prefix=settings.realtime.REDIS_CHANNEL_PREFIX,
        worker_id=settings.system.WORKER_ID or None,
    )
    await init_dependencies(get_database(), redis, event_bus, hub)
    await hub.start()
    await get_maintenance_service().seed()

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION} готов к работе",
        type_msg=TypeMsg.INFO,
    )


async def shutdown() -> None:
    from src.infra.database import close_db
    from src.infra.event_bus import close_event_bus
    from src.infra.redis_client import close_redis

    await get_hub().stop()
    await cleanup_dependencies()
    await close_event_bus()
    await close_redis()
    await close_db()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Жизненный цикл приложения."""
    await startup()
    yield
    await shutdown()


# === ОБРАБОТЧИКИ ОШИБОК ===

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder([
        {key: err.get(key) for key in ("loc", "msg", "type")} for err in exc.errors()
    ])
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Validation failed"))
    error = ValidationFailedError(message, details={"errors": errors})
    return JSONResponse(status_code=error.http_status, content=error.to_payload())


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    kind = _KIND_BY_HTTP_STATUS.get(exc.status_code, ErrorKind.INTERNAL)
    payload = {"success": False, "message": str(exc.detail), "error": kind.value}
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def data_error_handler(request: Request, exc: DataError) -> JSONResponse:
    await log_warning(f"Некорректные данные в запросе {request.method} {request.url.path}: {exc}")
    error = ValidationFailedError("Invalid identifier or value")
    return JSONResponse(status_code=error.http_status, content=error.to_payload())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    await log_error(f"Необработанная ошибка {request.method} {request.url.path}: {exc}", exc_info=True)
    error = InternalError("Internal server error")
    return JSONResponse(status_code=error.http_status, content=error.to_payload())


# === APP ===

def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Собирает приложение.

    Args:
        use_lifespan: Подключать инфраструктуру при старте (в тестах зависимости
            задаются через init_dependencies)
    """
    from src.config import settings

    prefix = settings.server.API_PREFIX
    app = FastAPI(
        title=settings.system.PROJECT_NAME,
        description="Диспетчеризация заявок на помощь на дороге и realtime-уведомления.",
        version=settings.system.VERSION,
        lifespan=lifespan if use_lifespan else None,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(DataError, data_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Последний добавленный middleware выполняется первым
    app.middleware("http")(make_maintenance_middleware(prefix))
    app.middleware("http")(make_timeout_middleware(settings.server.REQUEST_TIMEOUT_SECONDS))
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for module in (requests, mechanics, payments, chat, admin):
        app.include_router(module.router, prefix=prefix)
    app.include_router(stats_router, prefix=prefix)
    app.include_router(ws_router)

    @app.get(f"{prefix}/health", tags=["Health"])
    async def health_check() -> dict[str, Any]:
        """Проверка здоровья сервиса и его зависимостей."""
        db_ok = await get_db().health_check()
        redis = get_redis()
        redis_ok = redis is not None and await redis.health_check()
        health = HealthStatus(
            service=settings.system.PROJECT_NAME,
            status="healthy" if db_ok and redis_ok else ("degraded" if db_ok else "unhealthy"),
            version=settings.system.VERSION,
            uptime_seconds=round(time.monotonic() - _started_at, 1),
            dependencies={
                "database": "ok" if db_ok else "unavailable",
                "redis": "ok" if redis_ok else "unavailable",
            },
        )
        return ApiResponse.ok("Service is running", health)

    @app.get(f"{prefix}/status/maintenance", tags=["Health"])
    async def maintenance_status() -> dict[str, Any]:
        status = await get_maintenance_service().status()
        return {"success": True, **status.to_wire()}

    return app


app = create_app()
