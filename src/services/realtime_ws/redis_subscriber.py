# src/services/realtime_ws/redis_subscriber.py
"""
Подписчик на Redis Pub/Sub для межворкерной рассылки.

Слушает каналы <prefix>:* - событие, опубликованное одним воркером,
доставляется подписчикам комнат на остальных воркерах.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Coroutine

from src.common.logger import log_error


class RedisSubscriber:
    """
    Подписчик на Redis Pub/Sub.

    Получает сообщения и передаёт их обработчику (channel, data).
    """

    def __init__(
        self,
        pubsub_factory: Callable[[], Any],
        message_handler: Callable[[str, dict[str, Any]], Coroutine[Any, Any, None]],
    ) -> None:
        """
        Args:
            pubsub_factory: Создаёт объект PubSub (RedisClient.pubsub)
            message_handler: Callback для обработки сообщений (channel, data)
        """
        self._pubsub_factory = pubsub_factory
        self._handler = message_handler
        self._pubsub: Any = None
        self._task: asyncio.Task | None = None
        self._running = False
        self._patterns: set[str] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, *patterns: str) -> None:
        """Подписывается на паттерны и запускает цикл чтения."""
        if self._running:
            return

        self._pubsub = self._pubsub_factory()
        self._running = True
        for pattern in patterns:
            await self.subscribe_pattern(pattern)
        self._task = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        self._patterns.clear()

    async def subscribe_pattern(self, pattern: str) -> None:
        if self._pubsub and pattern not in self._patterns:
            await self._pubsub.psubscribe(pattern)
            self._patterns.add(pattern)

    async def _listen(self) -> None:
        while self._running:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message is None:
                    continue
                await self._process_message(message)
            except asyncio.CancelledError:
                break
            except Exception as e:
                await log_error(f"Ошибка подписчика Redis: {e}")
                await asyncio.sleep(1)

    async def _process_message(self, message: dict[str, Any]) -> None:
        if message.get("type") not in ("message", "pmessage"):
            return

        channel = message.get("channel", "")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")

        data = message.get("data", "")
        if isinstance(data, bytes):
            data = data.decode("utf-8")

        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            await log_error(f"Некорректное сообщение в канале {channel}")
            return

        if isinstance(parsed, dict):
            await self._handler(channel, parsed)
