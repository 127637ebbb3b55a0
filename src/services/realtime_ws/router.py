# src/services/realtime_ws/router.py
"""
WebSocket endpoint realtime-хаба и статистика соединений.

WebSocket:
- /ws?token=<jwt> (или заголовок Authorization: Bearer <jwt>)

REST:
- GET /api/realtime/stats - статистика соединений (администратор)
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from src.common.constants import ROOM_ADMINS, ROOM_MECHANICS, TypeMsg, user_room
from src.common.errors import UnauthenticatedError
from src.common.logger import log_error, log_info
from src.core.notifications.service import utc_now_iso
from src.core.users.models import Principal
from src.core.users.tokens import extract_bearer
from src.services.api.dependencies import (
    get_connection_limiter,
    get_hub,
    get_realtime_handlers,
    get_token_verifier,
    require_admin,
)
from src.shared.models.common import ApiResponse


ws_router = APIRouter(tags=["Realtime"])
stats_router = APIRouter(prefix="/realtime", tags=["Realtime"])


def _client_address(websocket: WebSocket) -> str:
    return websocket.client.host if websocket.client else "unknown"


@ws_router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    token: str | None = Query(default=None),
) -> None:
    """
    Realtime-соединение.

    До принятия соединения проверяются лимит попыток с адреса и токен.
    После принятия соединение входит в user_<id>, механики в mechanics,
    администраторы в admins.
    """
    address = _client_address(websocket)
    if not get_connection_limiter().allow(address):
        await log_info(f"Слишком много подключений с {address}", type_msg=TypeMsg.WARNING)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Too many connection attempts")
        return

    token = token or extract_bearer(websocket.headers.get("authorization"))
    try:
        principal = await get_token_verifier().verify(token)
    except UnauthenticatedError as e:
        await log_info(f"Отклонено подключение с {address}: {e.message}", type_msg=TypeMsg.WARNING)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return
    except Exception as e:
        await log_error(f"Realtime: ошибка проверки токена с {address}: {e}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Internal server error")
        return

    hub = get_hub()
    handlers = get_realtime_handlers()
    conn = await hub.manager.connect(websocket, principal, address)

    hub.manager.join(conn, user_room(principal.id))
    if principal.is_mechanic:
        hub.manager.join(conn, ROOM_MECHANICS)
    if principal.is_admin:
        hub.manager.join(conn, ROOM_ADMINS)

    await log_info(
        f"Realtime: подключён {principal.id} ({principal.role.value}) с {address}",
        type_msg=TypeMsg.INFO,
    )
    await hub.manager.send(conn, {
        "event": "connected",
        "data": {
            "userId": principal.id,
            "role": principal.role.value,
            "rooms": sorted(conn.rooms),
            "timestamp": utc_now_iso(),
        },
    })

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame: Any = json.loads(raw)
            except json.JSONDecodeError:
                frame = None
            await handlers.dispatch(conn, frame)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        await log_error(f"Realtime: ошибка соединения {conn.conn_id}: {e}")
    finally:
        await handlers.on_disconnect(conn)
        await log_info(f"Realtime: отключён {principal.id}", type_msg=TypeMsg.INFO)


@stats_router.get("/stats")
async def realtime_stats(admin: Principal = Depends(require_admin)) -> dict[str, Any]:
    """Статистика соединений этого воркера."""
    hub = get_hub()
    return ApiResponse.ok(
        "Realtime statistics",
        {"workerId": hub.worker_id, **hub.manager.get_stats()},
    )
