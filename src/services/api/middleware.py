# src/services/api/middleware.py
"""
HTTP middleware: режим обслуживания и общий таймаут запроса.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from src.common.constants import TypeMsg
from src.common.errors import AppError, OperationTimeoutError, ServiceUnavailableError
from src.common.logger import log_error, log_info
from src.core.users.tokens import extract_bearer
from src.services.api.dependencies import get_maintenance_service, get_token_verifier


CallNext = Callable[[Request], Awaitable[Response]]


def maintenance_exempt_paths(prefix: str) -> frozenset[str]:
    """Маршруты, доступные в режиме обслуживания всем."""
    return frozenset({f"{prefix}/health", f"{prefix}/status/maintenance"})


async def _is_admin(request: Request) -> bool:
    token = extract_bearer(request.headers.get("authorization"))
    if not token:
        return False
    try:
        principal = await get_token_verifier().verify(token)
    except AppError:
        return False
    return principal.is_admin


def make_maintenance_middleware(prefix: str) -> Callable[[Request, CallNext], Awaitable[Response]]:
    """
    Пока включён режим обслуживания, отвечает 503 на любой запрос,
    кроме служебных маршрутов и запросов администратора.
    """
    exempt = maintenance_exempt_paths(prefix)

    async def maintenance_middleware(request: Request, call_next: CallNext) -> Response:
        if request.method == "OPTIONS" or request.url.path in exempt:
            return await call_next(request)

        service = get_maintenance_service()
        try:
            enabled = await service.is_enabled()
        except Exception as e:
            # Флаг недоступен: запрос пропускается, ошибку БД вернёт сам маршрут
            await log_error(f"Не удалось прочитать режим обслуживания: {e}")
            enabled = False

        if enabled and not await _is_admin(request):
            status = await service.status()
            error = ServiceUnavailableError(status.message or "Service under maintenance")
            payload = {**error.to_payload(), "data": {"maintenance": True}}
            return JSONResponse(status_code=error.http_status, content=payload)
        return await call_next(request)

    return maintenance_middleware


def make_timeout_middleware(timeout_seconds: float) -> Callable[[Request, CallNext], Awaitable[Response]]:
    """Запрос дольше timeout_seconds завершается ответом 408."""

    async def timeout_middleware(request: Request, call_next: CallNext) -> Response:
        try:
            return await asyncio.wait_for(call_next(request), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            await log_info(
                f"Таймаут запроса {request.method} {request.url.path} ({timeout_seconds} с)",
                type_msg=TypeMsg.WARNING,
            )
            error = OperationTimeoutError("Request timed out")
            return JSONResponse(status_code=error.http_status, content=error.to_payload())

    return timeout_middleware
