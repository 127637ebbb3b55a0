# src/services/realtime_ws/handlers.py
"""
Обработчики клиентских событий realtime-соединения.

Кадр клиента: {"event": str, "data": dict, "ack": id?}.
Если передан ack, сервер отвечает кадром
{"event": "ack", "ack": id, "data": {"success": bool, ...}}.
Ошибка без ack уходит отдельным кадром "error".
"""

from __future__ import annotations

import math
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from asyncpg.exceptions import DataError

from src.common.constants import (
    ROOM_MECHANICS,
    TypeMsg,
    chat_room,
    request_room,
)
from src.common.errors import (
    AppError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    RateLimitedError,
    ValidationFailedError,
)
from src.common.ids import is_uuid
from src.common.logger import log_debug, log_error, log_info
from src.core.chat.models import Attachment
from src.core.chat.service import ChatService
from src.core.geo import has_point
from src.core.mechanics.service import MechanicService
from src.core.notifications.service import utc_now_iso
from src.core.requests.models import ServiceRequest
from src.core.requests.repository import RequestRepository
from src.infra.database import DatabaseManager
from src.services.realtime_ws.connection_manager import ConnectionInfo, ConnectionManager
from src.services.realtime_ws.hub import RealtimeHub
from src.services.realtime_ws.rate_limit import SlidingWindow


Handler = Callable[[ConnectionInfo, dict[str, Any]], Awaitable[Optional[dict[str, Any]]]]

CHAT_ROOM_PREFIX = chat_room("")


def parse_coordinates(data: dict[str, Any]) -> tuple[float, float]:
    """
    Координаты из coordinates: [lng, lat] или location: {lat, lng}.

    Raises:
        ValidationFailedError: Нет координат, они нечисловые или нулевые
    """
    lon = lat = None
    coordinates = data.get("coordinates")
    location = data.get("location")
    if isinstance(coordinates, (list, tuple)) and len(coordinates) >= 2:
        lon, lat = coordinates[0], coordinates[1]
    elif isinstance(location, dict):
        lon = location.get("lng", location.get("lon"))
        lat = location.get("lat")

    try:
        lon, lat = float(lon), float(lat)
    except (TypeError, ValueError):
        raise ValidationFailedError("Valid coordinates are required") from None
    if not has_point(lon, lat):
        raise ValidationFailedError("Valid coordinates are required")
    return lon, lat


def _non_negative(value: Any, digits: int) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, round(number, digits))


def _require_id(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not value or not isinstance(value, str):
        raise ValidationFailedError(f"{key} is required")
    if not is_uuid(value):
        raise ValidationFailedError(f"{key} is invalid")
    return value


class RealtimeHandlers:
    """
    Диспетчер событий одного воркера.

    Соединение не разрывается из-за ошибок обработки:
    клиент получает неуспешный ack или кадр error.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        hub: RealtimeHub,
        db: DatabaseManager,
        chat: ChatService,
        mechanics: MechanicService,
        location_interval: float | None = None,
        chat_window: SlidingWindow | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        from src.config import settings

        self._manager = manager
        self._hub = hub
        self._requests = RequestRepository(db)
        self._chat = chat
        self._mechanics = mechanics
        self._clock = clock
        self._location_interval = (
            settings.realtime.LOCATION_MIN_INTERVAL_SECONDS
            if location_interval is None else location_interval
        )
        self._chat_window = chat_window or SlidingWindow(
            settings.realtime.CHAT_MAX_MESSAGES,
            settings.realtime.CHAT_WINDOW_SECONDS,
            clock,
        )

        self._handlers: dict[str, Handler] = {
            "ping": self.on_ping,
            "join_request_room": self.on_join_request_room,
            "leave_request_room": self.on_leave_request_room,
            "join_mechanic_room": self.on_join_mechanic_room,
            "mechanic:location_update": self.on_location_update,
            "location_update": self.on_location_update,
            "mechanic:eta_update": self.on_eta_update,
            "mechanic:location_stop": self.on_location_stop,
            "join_chat": self.on_join_chat,
            "leave_chat": self.on_leave_chat,
            "send_message": self.on_send_message,
            "typing_start": self.on_typing_start,
            "typing_stop": self.on_typing_stop,
            "mark_read": self.on_mark_read,
            "toggle_availability": self.on_toggle_availability,
        }

    @property
    def events(self) -> list[str]:
        return sorted(self._handlers)

    # =========================================================================
    # ДИСПЕТЧЕРИЗАЦИЯ
    # =========================================================================

    async def dispatch(self, conn: ConnectionInfo, frame: Any) -> None:
        """Обрабатывает один кадр клиента."""
        if not isinstance(frame, dict):
            await self._send_error(conn, None, ValidationFailedError("Frame must be a JSON object"))
            return

        event = frame.get("event")
        data = frame.get("data")
        ack = frame.get("ack")
        if data is None:
            data = {}

        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            await self._send_error(conn, ack, ValidationFailedError(f"Unknown event: {event}"))
            return
        if not isinstance(data, dict):
            await self._send_error(conn, ack, ValidationFailedError("Event data must be an object"))
            return

        try:
            result = await handler(conn, data)
        except AppError as e:
            await log_debug(f"Событие {event} от {conn.principal.id} отклонено: {e.kind.value} {e.message}")
            await self._send_error(conn, ack, e)
            return
        except DataError as e:
            await log_debug(f"Событие {event} от {conn.principal.id}: некорректные данные {e}")
            await self._send_error(conn, ack, ValidationFailedError("Invalid identifier or value"))
            return
        except Exception as e:
            await log_error(f"Ошибка обработки события {event}: {e}", exc_info=True)
            await self._send_error(conn, ack, InternalError("Internal server error"))
            return

        # None: событие отброшено без ответа
        if result is not None and ack is not None:
            await self._manager.send(
                conn, {"event": "ack", "ack": ack, "data": {"success": True, **result}}
            )

    async def _send_error(self, conn: ConnectionInfo, ack: Any, error: AppError) -> None:
        payload = error.to_payload()
        if ack is not None:
            await self._manager.send(conn, {"event": "ack", "ack": ack, "data": payload})
        else:
            await self._manager.send(conn, {"event": "error", "data": payload})

    async def _reply(self, conn: ConnectionInfo, event: str, data: dict[str, Any]) -> None:
        await self._manager.send(conn, {"event": event, "data": data})

    # =========================================================================
    # ДОСТУП
    # =========================================================================

    async def _load_request(self, request_id: str) -> ServiceRequest:
        request = await self._requests.get_by_id(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        return request

    @staticmethod
    def _require_mechanic_role(conn: ConnectionInfo) -> None:
        if not conn.principal.is_mechanic:
            raise ForbiddenError("Mechanic role required")

    async def _assigned_request(self, conn: ConnectionInfo, request_id: str) -> ServiceRequest:
        request = await self._load_request(request_id)
        if request.mechanic_user_id != conn.principal.id:
            raise ForbiddenError("You are not assigned to this request")
        return request

    async def _mechanic_id(self, conn: ConnectionInfo) -> str:
        if conn.mechanic_id is None:
            mechanic = await self._mechanics.get_me(conn.principal)
            conn.mechanic_id = mechanic.id
        return conn.mechanic_id

    # =========================================================================
    # КОМНАТЫ
    # =========================================================================

    async def on_ping(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        result = {"timestamp": utc_now_iso()}
        await self._reply(conn, "pong", result)
        return result

    async def on_join_request_room(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        """Комната заявки: заявитель, назначенный механик или администратор."""
        request_id = _require_id(data, "requestId")
        request = await self._load_request(request_id)
        principal = conn.principal
        if not principal.is_admin and not request.is_participant(principal.id):
            raise ForbiddenError("Not authorized to join this request room")

        joined = self._manager.join(conn, request_room(request_id))
        result: dict[str, Any] = {"requestId": request_id}
        if not joined:
            result["alreadyJoined"] = True
        await self._reply(conn, "joined_request_room", {**result, "success": True})
        return result

    async def on_leave_request_room(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        request_id = _require_id(data, "requestId")
        left = self._manager.leave(conn, request_room(request_id))
        return {"requestId": request_id, "left": left}

    async def on_join_mechanic_room(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        self._require_mechanic_role(conn)
        joined = self._manager.join(conn, ROOM_MECHANICS)
        result = {"room": ROOM_MECHANICS, "alreadyJoined": not joined}
        await self._reply(conn, "joined_mechanic_room", {**result, "success": True})
        return result

    # =========================================================================
    # ПОЗИЦИЯ И ETA
    # =========================================================================

    async def on_location_update(self, conn: ConnectionInfo, data: dict[str, Any]) -> Optional[dict[str, Any]]:
        """
        Позиция механика.

        Не чаще одного раза в LOCATION_MIN_INTERVAL_SECONDS на соединение,
        лишние обновления отбрасываются без ответа. С requestId позиция
        уходит в комнату заявки, если механик на неё назначен.
        """
        self._require_mechanic_role(conn)

        now = self._clock()
        if conn.last_location_at and now - conn.last_location_at < self._location_interval:
            await log_debug(f"Позиция от {conn.principal.id} отброшена (throttle)")
            return None

        lon, lat = parse_coordinates(data)
        request_id = data.get("requestId")
        request = await self._assigned_request(conn, request_id) if request_id else None
        conn.last_location_at = now

        mechanic_id = request.mechanic_id if request is not None else await self._mechanic_id(conn)
        try:
            await self._mechanics.store_location(mechanic_id, lon, lat)
        except Exception as e:
            await log_error(f"Не удалось сохранить позицию механика {mechanic_id}: {e}")

        timestamp = utc_now_iso()
        if request is not None:
            room = request_room(request.id)
            await self._hub.emit(room, "mechanic_location_update", {
                "mechanicId": mechanic_id,
                "coordinates": [lon, lat],
                "timestamp": timestamp,
                "requestId": request.id,
            })
            await self._hub.emit(room, "mechanic:location_update", {
                "requestId": request.id,
                "mechanicId": mechanic_id,
                "location": {"lat": lat, "lng": lon},
                "timestamp": timestamp,
            })

        result = {"coordinates": [lon, lat], "timestamp": timestamp}
        await self._reply(conn, "location_update_success", {"message": "Location updated", **result})
        return result

    async def on_eta_update(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        self._require_mechanic_role(conn)
        request = await self._assigned_request(conn, _require_id(data, "requestId"))

        payload = {
            "requestId": request.id,
            "etaMinutes": int(_non_negative(data.get("etaMinutes"), 0)),
            "distanceKm": _non_negative(data.get("distanceKm"), 2),
            "speedKph": _non_negative(data.get("speedKph"), 1),
            "timestamp": utc_now_iso(),
        }
        room = request_room(request.id)
        await self._hub.emit(room, "mechanic:eta_update", payload)
        # Старые клиенты слушают request:eta_update
        await self._hub.emit(room, "request:eta_update", payload)
        return payload

    async def on_location_stop(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        self._require_mechanic_role(conn)
        request = await self._assigned_request(conn, _require_id(data, "requestId"))

        payload = {
            "requestId": request.id,
            "mechanicId": request.mechanic_id,
            "timestamp": utc_now_iso(),
        }
        await self._hub.emit(request_room(request.id), "mechanic:location_stop", payload)
        await log_info(f"Механик {request.mechanic_id} остановил трансляцию по заявке {request.id}", type_msg=TypeMsg.INFO)
        return payload

    # =========================================================================
    # ЧАТ
    # =========================================================================

    async def on_join_chat(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        chat = await self._chat.join(
            conn.principal,
            chat_id=data.get("chatId"),
            request_id=data.get("requestId"),
        )
        room = chat_room(chat.id)
        if self._manager.join(conn, room):
            await self._hub.emit(
                room,
                "user_online",
                {"chatId": chat.id, "userId": conn.principal.id},
                exclude=conn,
            )
        return {"chatId": chat.id, "requestId": chat.request_id, "isClosed": chat.is_closed}

    async def on_leave_chat(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        chat_id = _require_id(data, "chatId")
        room = chat_room(chat_id)
        if self._manager.leave(conn, room):
            await self._hub.emit(room, "user_offline", {"chatId": chat_id, "userId": conn.principal.id})
        return {"chatId": chat_id}

    async def on_send_message(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        """
        Сообщение в чат по chatId или requestId.
        Не больше CHAT_MAX_MESSAGES за CHAT_WINDOW_SECONDS на соединение в одной комнате.
        """
        if data.get("chatId"):
            chat_id, request_id = _require_id(data, "chatId"), None
            window_key = chat_id
        elif data.get("requestId"):
            chat_id, request_id = None, _require_id(data, "requestId")
            window_key = f"req_{request_id}"
        else:
            raise ValidationFailedError("chatId or requestId is required")
        stamps = conn.chat_sends.setdefault(window_key, deque())
        if not self._chat_window.hit(stamps):
            await log_info(
                f"Лимит сообщений в чате {window_key} для {conn.principal.id}",
                type_msg=TypeMsg.WARNING,
            )
            raise RateLimitedError("Rate limit exceeded")

        raw_attachments = data.get("attachments") or []
        if not isinstance(raw_attachments, list):
            raise ValidationFailedError("attachments must be a list")
        try:
            attachments = [Attachment.model_validate(item) for item in raw_attachments]
        except ValueError:
            raise ValidationFailedError("Invalid attachment") from None

        message = await self._chat.send_message(
            conn.principal,
            chat_id,
            text=data.get("text"),
            attachments=attachments,
            request_id=request_id,
        )
        return {
            "chatId": message.chat_id,
            "messageId": message.id,
            "status": message.status.value,
        }

    async def _typing(self, conn: ConnectionInfo, data: dict[str, Any], event: str) -> dict[str, Any]:
        chat_id = _require_id(data, "chatId")
        room = chat_room(chat_id)
        if room not in conn.rooms:
            raise ForbiddenError("Join the chat first")
        payload = {"chatId": chat_id, "userId": conn.principal.id}
        await self._hub.emit(room, event, payload, exclude=conn)
        return payload

    async def on_typing_start(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        return await self._typing(conn, data, "typing_start")

    async def on_typing_stop(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        return await self._typing(conn, data, "typing_stop")

    async def on_mark_read(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        return await self._chat.mark_read(conn.principal, _require_id(data, "chatId"))

    # =========================================================================
    # ДОСТУПНОСТЬ
    # =========================================================================

    async def on_toggle_availability(self, conn: ConnectionInfo, data: dict[str, Any]) -> dict[str, Any]:
        """Без isAvailable значение переключается на противоположное."""
        self._require_mechanic_role(conn)
        is_available = data.get("isAvailable")
        if is_available is None:
            current = await self._mechanics.get_me(conn.principal)
            is_available = not current.is_available
        elif not isinstance(is_available, bool):
            raise ValidationFailedError("isAvailable must be a boolean")

        mechanic = await self._mechanics.set_availability(conn.principal, is_available)
        conn.mechanic_id = mechanic.id
        message = "You are now available" if is_available else "You are now unavailable"
        await self._reply(conn, "availability_updated", {"isAvailable": is_available, "message": message})
        await self._hub.emit_all(
            "mechanic_availability_changed",
            {"mechanicId": mechanic.id, "isAvailable": is_available, "timestamp": utc_now_iso()},
        )
        return {"mechanicId": mechanic.id, "isAvailable": is_available}

    # =========================================================================
    # ОТКЛЮЧЕНИЕ
    # =========================================================================

    async def on_disconnect(self, conn: ConnectionInfo) -> None:
        """Выходит из всех комнат и сообщает чатам об уходе пользователя."""
        rooms = self._manager.disconnect(conn)
        for room in rooms:
            if not room.startswith(CHAT_ROOM_PREFIX):
                continue
            chat_id = room[len(CHAT_ROOM_PREFIX):]
            try:
                await self._hub.emit(room, "user_offline", {"chatId": chat_id, "userId": conn.principal.id})
            except Exception as e:
                await log_error(f"Не удалось разослать user_offline в {room}: {e}")
