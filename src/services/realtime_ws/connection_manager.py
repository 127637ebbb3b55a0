# src/services/realtime_ws/connection_manager.py
"""
Менеджер WebSocket соединений.
Управляет комнатами и рассылкой событий на этом воркере.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import WebSocket

from src.common.constants import UserRole
from src.common.logger import log_error
from src.core.users.models import Principal


@dataclass
class ConnectionInfo:
    """Состояние одного соединения."""
    websocket: WebSocket
    principal: Principal
    address: str
    conn_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rooms: set[str] = field(default_factory=set)
    # Отправки в один сокет не перемешиваются
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_location_at: float = 0.0
    # ID профиля механика, загружается при первом обращении
    mechanic_id: Optional[str] = None
    chat_sends: dict[str, deque[float]] = field(default_factory=dict)

    @property
    def role(self) -> UserRole:
        return self.principal.role

    def clear_throttles(self) -> None:
        self.last_location_at = 0.0
        self.chat_sends.clear()


class ConnectionManager:
    """
    Менеджер WebSocket соединений.

    Поддерживает:
    - Несколько соединений одного пользователя
    - Комнаты (user_<id>, request_<id>, chat_<id>, mechanics, admins)
    - Рассылку в комнату в порядке вызова emit
    - Статистику для администратора
    """

    def __init__(self) -> None:
        # conn_id -> ConnectionInfo
        self._connections: dict[str, ConnectionInfo] = {}

        # room -> set of conn_id
        self._rooms: dict[str, set[str]] = {}

        self._total_connections: int = 0
        self._total_messages_sent: int = 0

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket, principal: Principal, address: str) -> ConnectionInfo:
        """Принимает соединение, уже прошедшее проверку токена."""
        await websocket.accept()
        conn = ConnectionInfo(websocket=websocket, principal=principal, address=address)
        self._connections[conn.conn_id] = conn
        self._total_connections += 1
        return conn

    def disconnect(self, conn: ConnectionInfo) -> set[str]:
        """
        Удаляет соединение из всех комнат.

        Returns:
            Комнаты, в которых состояло соединение
        """
        rooms = set(conn.rooms)
        for room in rooms:
            self._leave_room(conn, room)
        conn.clear_throttles()
        self._connections.pop(conn.conn_id, None)
        return rooms

    def join(self, conn: ConnectionInfo, room: str) -> bool:
        """
        Добавляет соединение в комнату.

        Returns:
            False если соединение уже в комнате
        """
        if room in conn.rooms:
            return False
        conn.rooms.add(room)
        self._rooms.setdefault(room, set()).add(conn.conn_id)
        return True

    def leave(self, conn: ConnectionInfo, room: str) -> bool:
        if room not in conn.rooms:
            return False
        self._leave_room(conn, room)
        return True

    def _leave_room(self, conn: ConnectionInfo, room: str) -> None:
        conn.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn.conn_id)
            if not members:
                del self._rooms[room]

    async def send(self, conn: ConnectionInfo, frame: dict[str, Any]) -> bool:
        """
        Отправляет кадр в соединение.

        Returns:
            True если кадр отправлен
        """
        try:
            async with conn.send_lock:
                await conn.websocket.send_json(frame)
            self._total_messages_sent += 1
            return True
        except Exception as e:
            # Соединение разорвано: его закроет цикл приёма
            await log_error(f"Не удалось отправить кадр в соединение {conn.conn_id}: {e}")
            return False

    async def emit_local(
        self,
        room: str,
        event: str,
        data: dict[str, Any],
        exclude: Optional[ConnectionInfo] = None,
    ) -> int:
        """
        Отправляет событие всем соединениям комнаты на этом воркере.

        Returns:
            Количество успешно отправленных кадров
        """
        frame = {"event": event, "data": data}
        sent = 0
        for conn_id in list(self._rooms.get(room, ())):
            conn = self._connections.get(conn_id)
            if conn is None or conn is exclude:
                continue
            if await self.send(conn, frame):
                sent += 1
        return sent

    async def emit_all_local(self, event: str, data: dict[str, Any]) -> int:
        frame = {"event": event, "data": data}
        sent = 0
        for conn in list(self._connections.values()):
            if await self.send(conn, frame):
                sent += 1
        return sent

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_connections": len(self._connections),
            "total_rooms": len(self._rooms),
            "total_connections_ever": self._total_connections,
            "total_messages_sent": self._total_messages_sent,
            "connections_by_role": self._count_by_role(),
        }

    def _count_by_role(self) -> dict[str, int]:
        counts: dict[str, int] = {role.value: 0 for role in UserRole}
        for conn in self._connections.values():
            counts[conn.role.value] += 1
        return counts
