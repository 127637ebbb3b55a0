# src/infra/event_bus.py
"""
Доменные события в RabbitMQ.

Сервисы публикуют факты (заявка принята, платёж записан, правка профиля
ушла на модерацию, ...) в durable topic exchange, routing key = тип события.
Шина необязательна: без соединения публикация пропускается.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import aio_pika
from aio_pika import Message, ExchangeType
from aio_pika.abc import AbstractRobustConnection, AbstractExchange

from src.common.logger import log_error, log_info
from src.common.constants import TypeMsg


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DomainEvent:
    event_type: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: str = field(default_factory=_utc_now_iso)

    def to_json(self) -> str:
        return json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }, ensure_ascii=False, default=str)


class EventTypes:
    """Routing keys."""
    REQUEST_CREATED = "request.created"
    REQUEST_ACCEPTED = "request.accepted"
    REQUEST_STATUS_CHANGED = "request.status_changed"
    REQUEST_COMPLETED = "request.completed"
    REQUEST_CANCELLED = "request.cancelled"
    REQUEST_RATED = "request.rated"

    PAYMENT_COMPLETED = "payment.completed"

    MECHANIC_CHANGE_REQUESTED = "mechanic.change_requested"
    MECHANIC_CHANGE_DECIDED = "mechanic.change_decided"
    MECHANIC_VERIFICATION_CHANGED = "mechanic.verification_changed"
    MECHANIC_PROFILE_UPDATED = "mechanic.profile_updated"

    USER_STATUS_CHANGED = "user.status_changed"

    PRICING_POLICY_UPDATED = "pricing.policy_updated"

    MAINTENANCE_TOGGLED = "maintenance.toggled"
    SETTING_UPDATED = "settings.updated"


class EventBus:
    """
    Публикатор в RabbitMQ (Singleton).
    Ошибка публикации логируется: действие пользователя из-за шины не откатывается.
    """

    _instance: EventBus | None = None
    _connection: AbstractRobustConnection | None = None
    _exchange: AbstractExchange | None = None
    _exchange_name: str = "roadside.events"

    def __new__(cls) -> EventBus:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self, url: str, exchange_name: str | None = None) -> None:
        if self.is_connected:
            return
        if exchange_name:
            self._exchange_name = exchange_name
        self._connection = await aio_pika.connect_robust(url)
        channel = await self._connection.channel()
        self._exchange = await channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )

    async def disconnect(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._exchange = None

    async def publish(self, event: DomainEvent) -> None:
        if not self.is_connected or self._exchange is None:
            await log_info(f"RabbitMQ недоступен, событие {event.event_type} пропущено", type_msg=TypeMsg.DEBUG)
            return

        message = Message(
            body=event.to_json().encode(),
            content_type="application/json",
            message_id=event.event_id,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            await self._exchange.publish(message, routing_key=event.event_type)
        except Exception as e:
            await log_error(f"Ошибка публикации события {event.event_type}: {e}")
            return
        await log_info(f"Событие опубликовано: {event.event_type}", type_msg=TypeMsg.DEBUG)


def get_event_bus() -> EventBus:
    return EventBus()


async def init_event_bus() -> None:
    """Подключение по настройкам [rabbitmq]."""
    from src.config import settings

    cfg = settings.rabbitmq
    await get_event_bus().connect(url=cfg.url, exchange_name=cfg.RABBITMQ_EXCHANGE)
    await log_info(f"RabbitMQ подключён: {cfg.RABBITMQ_HOST}:{cfg.RABBITMQ_PORT}", type_msg=TypeMsg.INFO)


async def close_event_bus() -> None:
    await get_event_bus().disconnect()
    await log_info("RabbitMQ отключён", type_msg=TypeMsg.INFO)
