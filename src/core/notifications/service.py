# src/core/notifications/service.py
"""
Сервис уведомлений.
Единая точка fan-out из доменного слоя: realtime-комнаты и шина событий.

Ошибки доставки логируются и не пробрасываются: событие уже произошло
в БД, а клиенты перечитывают состояние после переподключения.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Protocol

from src.common.constants import TypeMsg
from src.common.logger import log_info, log_error
from src.infra.event_bus import EventBus, DomainEvent


class RealtimeEmitter(Protocol):
    """То, что умеет рассылать события по комнатам (реализует RealtimeHub)."""

    async def emit(self, room: str, event: str, payload: dict[str, Any]) -> int: ...

    async def emit_all(self, event: str, payload: dict[str, Any]) -> int: ...


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class NotificationService:
    """
    Сервис уведомлений.

    Рассылает realtime-события через хаб и публикует доменные события
    в шину. Хаб может отсутствовать (фоновые задачи, тесты).
    """

    def __init__(self, hub: Optional[RealtimeEmitter], event_bus: Optional[EventBus] = None) -> None:
        """
        Инициализация сервиса.

        Args:
            hub: Realtime-хаб
            event_bus: Шина событий
        """
        self._hub = hub
        self._event_bus = event_bus

    async def emit(self, room: str, event: str, payload: dict[str, Any]) -> int:
        """
        Отправляет событие в комнату.

        Returns:
            Число получателей на этом воркере (0 при ошибке)
        """
        if self._hub is None:
            return 0
        try:
            return await self._hub.emit(room, event, payload)
        except Exception as e:
            await log_error(f"Не удалось отправить {event} в {room}: {e}")
            return 0

    async def emit_many(self, rooms: Iterable[str], event: str, payload: dict[str, Any]) -> int:
        """Отправляет одно событие в несколько комнат по порядку."""
        delivered = 0
        for room in dict.fromkeys(rooms):
            delivered += await self.emit(room, event, payload)
        return delivered

    async def emit_all(self, event: str, payload: dict[str, Any]) -> int:
        """Отправляет событие всем подключённым клиентам."""
        if self._hub is None:
            return 0
        try:
            return await self._hub.emit_all(event, payload)
        except Exception as e:
            await log_error(f"Не удалось разослать {event}: {e}")
            return 0

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        """Публикует доменное событие в шину."""
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(DomainEvent(event_type=event_type, payload=payload))
            await log_info(f"Событие {event_type} опубликовано", type_msg=TypeMsg.DEBUG)
        except Exception as pub_error:
            await log_error(f"Не удалось опубликовать {event_type}: {pub_error}")
