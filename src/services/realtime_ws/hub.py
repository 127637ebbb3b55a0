# src/services/realtime_ws/hub.py
"""
Realtime-хаб: точка рассылки событий для доменного слоя.

Локальная доставка идёт через ConnectionManager. При включённом
REALTIME_REDIS_FANOUT событие дополнительно публикуется в Redis,
и остальные воркеры доставляют его своим подписчикам.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

from src.common.constants import TypeMsg
from src.common.logger import log_info, log_error
from src.infra.redis_client import RedisClient
from src.services.realtime_ws.connection_manager import ConnectionInfo, ConnectionManager
from src.services.realtime_ws.redis_subscriber import RedisSubscriber


BROADCAST_ROOM = "*"


class RealtimeHub:
    """
    Realtime-хаб.

    Реализует RealtimeEmitter (emit / emit_all), который используют
    сервисы ядра через NotificationService.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        redis: Optional[RedisClient] = None,
        fanout: bool = False,
        channel_prefix: str = "realtime",
        worker_id: str | None = None,
    ) -> None:
        self.manager = manager
        self._redis = redis
        self._fanout = fanout and redis is not None
        self._prefix = channel_prefix
        self._worker_id = worker_id or uuid.uuid4().hex
        self._subscriber: RedisSubscriber | None = None

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def _channel(self, room: str) -> str:
        return f"{self._prefix}:{room}"

    # =========================================================================
    # РАССЫЛКА
    # =========================================================================

    async def emit(
        self,
        room: str,
        event: str,
        payload: dict[str, Any],
        exclude: Optional[ConnectionInfo] = None,
    ) -> int:
        """
        Отправляет событие в комнату.

        Args:
            exclude: Соединение-отправитель, которому событие не доставляется

        Returns:
            Количество получателей на этом воркере
        """
        delivered = await self.manager.emit_local(room, event, payload, exclude=exclude)
        await self._publish(room, event, payload)
        return delivered

    async def emit_all(self, event: str, payload: dict[str, Any]) -> int:
        delivered = await self.manager.emit_all_local(event, payload)
        await self._publish(BROADCAST_ROOM, event, payload)
        return delivered

    async def _publish(self, room: str, event: str, payload: dict[str, Any]) -> None:
        if not self._fanout:
            return
        try:
            await self._redis.publish(
                self._channel(room),
                {"origin": self._worker_id, "room": room, "event": event, "data": payload},
            )
        except Exception as e:
            await log_error(f"Не удалось опубликовать {event} для {room} в Redis: {e}")

    # =========================================================================
    # МЕЖВОРКЕРНАЯ ДОСТАВКА
    # =========================================================================

    async def handle_remote(self, channel: str, message: dict[str, Any]) -> int:
        """Доставляет событие, опубликованное другим воркером."""
        if message.get("origin") == self._worker_id:
            return 0
        event = message.get("event")
        data = message.get("data")
        if not isinstance(event, str) or not isinstance(data, dict):
            return 0

        room = message.get("room") or channel.removeprefix(f"{self._prefix}:")
        if room == BROADCAST_ROOM:
            return await self.manager.emit_all_local(event, data)
        return await self.manager.emit_local(room, event, data)

    async def start(self) -> None:
        if not self._fanout or self._subscriber is not None:
            return
        self._subscriber = RedisSubscriber(self._redis.pubsub, self.handle_remote)
        await self._subscriber.start(f"{self._prefix}:*")
        await log_info(
            f"Realtime fan-out через Redis включён (воркер {self._worker_id})",
            type_msg=TypeMsg.INFO,
        )

    async def stop(self) -> None:
        if self._subscriber is not None:
            await self._subscriber.stop()
            self._subscriber = None
