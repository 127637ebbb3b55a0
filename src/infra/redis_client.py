# src/infra/redis_client.py
"""
Redis: кэш (профили механиков, заявки, политика цен, флаг обслуживания)
и каналы pub/sub для доставки realtime-событий на другие воркеры.
"""

from __future__ import annotations

import json
from typing import Any, TypeVar, Type

import redis.asyncio as redis
from pydantic import BaseModel

from src.common.logger import log_error, log_info
from src.common.constants import TypeMsg

T = TypeVar("T", bound=BaseModel)


class RedisClient:
    """
    Асинхронный клиент Redis (Singleton).
    Ключи кэша получают префикс namespace, каналы pub/sub - нет.
    """

    _instance: RedisClient | None = None
    _client: redis.Redis | None = None
    _namespace: str = "roadside"

    def __new__(cls) -> RedisClient:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def _make_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def connect(self, url: str, max_connections: int = 50, namespace: str | None = None) -> None:
        if self._client is not None:
            return
        if namespace:
            self._namespace = namespace
        client = redis.from_url(url, max_connections=max_connections, decode_responses=True)
        await client.ping()
        self._client = client

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # КЭШ
    # =========================================================================

    async def get(self, key: str) -> str | None:
        return await self.client.get(self._make_key(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        return await self.client.set(self._make_key(key), value, ex=ttl)

    async def delete(self, *keys: str) -> int:
        """Инвалидация; без ключей Redis не вызывается."""
        if not keys:
            return 0
        return await self.client.delete(*(self._make_key(k) for k in keys))

    async def get_model(self, key: str, model_class: Type[T]) -> T | None:
        """
        Модель из кэша.
        Запись, не проходящая валидацию (например, после смены схемы), считается промахом.
        """
        data = await self.get(key)
        if data is None:
            return None
        try:
            return model_class.model_validate_json(data)
        except ValueError as e:
            await log_error(f"Кэш {key}: запись не читается как {model_class.__name__}: {e}")
            return None

    async def set_model(self, key: str, model: BaseModel, ttl: int | None = None) -> bool:
        return await self.set(key, model.model_dump_json(), ttl=ttl)

    # =========================================================================
    # PUB/SUB
    # =========================================================================

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        """
        Кадр realtime-события в канал <prefix>:<room>.

        Returns:
            Количество воркеров-подписчиков, получивших кадр
        """
        return await self.client.publish(channel, json.dumps(message, ensure_ascii=False, default=str))

    def pubsub(self) -> Any:
        """PubSub поверх общего пула (для RedisSubscriber)."""
        return self.client.pubsub()

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            return await self.client.ping()
        except Exception as e:
            await log_error(f"Health check Redis failed: {e}")
            return False


def get_redis() -> RedisClient:
    return RedisClient()


async def init_redis() -> None:
    """Подключение по настройкам [redis]."""
    from src.config import settings

    cfg = settings.redis
    await get_redis().connect(
        url=cfg.url,
        max_connections=cfg.REDIS_MAX_CONNECTIONS,
        namespace=cfg.REDIS_NAMESPACE,
    )
    await log_info(f"Redis подключён: {cfg.REDIS_HOST}:{cfg.REDIS_PORT}/{cfg.REDIS_DB}", type_msg=TypeMsg.INFO)


async def close_redis() -> None:
    await get_redis().disconnect()
    await log_info("Redis отключён", type_msg=TypeMsg.INFO)
