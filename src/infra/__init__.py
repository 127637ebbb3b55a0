# src/infra/__init__.py
"""
Инфраструктура: пул PostgreSQL, кэш и pub/sub в Redis, доменные события в RabbitMQ.
"""

from src.infra.database import DatabaseManager, close_db, get_db, init_db
from src.infra.redis_client import RedisClient, close_redis, get_redis, init_redis
from src.infra.event_bus import DomainEvent, EventBus, EventTypes, close_event_bus, get_event_bus, init_event_bus

__all__ = [
    "DatabaseManager",
    "get_db",
    "init_db",
    "close_db",
    "RedisClient",
    "get_redis",
    "init_redis",
    "close_redis",
    "DomainEvent",
    "EventBus",
    "EventTypes",
    "get_event_bus",
    "init_event_bus",
    "close_event_bus",
]
