# src/services/api/dependencies.py
"""
Dependency Injection для HTTP API и realtime-хаба.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from fastapi import Depends, Header, Query

from src.common.constants import RequestStatus
from src.common.errors import ForbiddenError, ValidationFailedError
from src.core.users.models import Principal
from src.core.users.tokens import extract_bearer
from src.shared.models.common import PaginationParams

if TYPE_CHECKING:
    from src.core.chat.service import ChatService
    from src.core.dispatch.service import Dispatcher
    from src.core.maintenance.service import MaintenanceService
    from src.core.mechanics.service import MechanicService
    from src.core.moderation.service import ModerationService
    from src.core.notifications.service import NotificationService
    from src.core.payments.service import PaymentService
    from src.core.pricing.policy import PricingPolicyService
    from src.core.requests.service import LifecycleService
    from src.core.users.service import UserService
    from src.core.users.tokens import TokenVerifier
    from src.infra.database import DatabaseManager
    from src.infra.event_bus import EventBus
    from src.infra.redis_client import RedisClient
    from src.services.realtime_ws.handlers import RealtimeHandlers
    from src.services.realtime_ws.hub import RealtimeHub
    from src.services.realtime_ws.rate_limit import ConnectionRateLimiter


# Синглтоны для инфраструктуры
_db: "DatabaseManager | None" = None
_redis: "RedisClient | None" = None
_event_bus: "EventBus | None" = None
_hub: "RealtimeHub | None" = None

# Синглтоны для сервисов
_services: dict[str, object] = {}


async def init_dependencies(
    db: "DatabaseManager",
    redis: "RedisClient | None",
    event_bus: "EventBus | None",
    hub: "RealtimeHub",
) -> None:
    """Инициализировать зависимости при старте приложения."""
    global _db, _redis, _event_bus, _hub
    _db = db
    _redis = redis
    _event_bus = event_bus
    _hub = hub
    _services.clear()


async def cleanup_dependencies() -> None:
    """Очистить ресурсы при остановке приложения."""
    global _db, _redis, _event_bus, _hub
    _services.clear()
    _db = _redis = _event_bus = _hub = None


def get_db() -> "DatabaseManager":
    """Получить менеджер базы данных."""
    if _db is None:
        raise RuntimeError("База данных не инициализирована. Вызовите init_dependencies()")
    return _db


def get_redis() -> "RedisClient | None":
    """Клиент Redis (None если кэш недоступен)."""
    return _redis


def get_hub() -> "RealtimeHub":
    """Получить realtime-хаб."""
    if _hub is None:
        raise RuntimeError("Realtime-хаб не инициализирован. Вызовите init_dependencies()")
    return _hub


def _singleton(name: str, factory):
    service = _services.get(name)
    if service is None:
        service = factory()
        _services[name] = service
    return service


# =============================================================================
# СЕРВИСЫ
# =============================================================================

def get_notifier() -> "NotificationService":
    from src.core.notifications.service import NotificationService
    return _singleton("notifier", lambda: NotificationService(get_hub(), _event_bus))


def get_chat_service() -> "ChatService":
    from src.core.chat.service import ChatService
    return _singleton("chat", lambda: ChatService(get_db(), get_notifier()))


def get_lifecycle_service() -> "LifecycleService":
    from src.core.requests.service import LifecycleService
    return _singleton(
        "lifecycle",
        lambda: LifecycleService(get_db(), get_redis(), get_notifier(), chat=get_chat_service()),
    )


def get_dispatcher() -> "Dispatcher":
    from src.core.dispatch.service import Dispatcher
    return _singleton("dispatcher", lambda: Dispatcher(get_db(), get_notifier()))


def get_mechanic_service() -> "MechanicService":
    from src.core.mechanics.service import MechanicService
    return _singleton("mechanics", lambda: MechanicService(get_db(), get_redis(), get_notifier()))


def get_payment_service() -> "PaymentService":
    from src.core.payments.service import PaymentService
    return _singleton(
        "payments",
        lambda: PaymentService(get_db(), get_notifier(), lifecycle=get_lifecycle_service()),
    )


def get_moderation_service() -> "ModerationService":
    from src.core.moderation.service import ModerationService
    return _singleton("moderation", lambda: ModerationService(get_db(), get_redis(), get_notifier()))


def get_maintenance_service() -> "MaintenanceService":
    from src.core.maintenance.service import MaintenanceService
    return _singleton("maintenance", lambda: MaintenanceService(get_db(), get_redis(), get_notifier()))


def get_pricing_policy_service() -> "PricingPolicyService":
    from src.core.pricing.policy import PricingPolicyService
    return _singleton("policy", lambda: PricingPolicyService(get_db(), get_redis(), _event_bus))


def get_user_service() -> "UserService":
    from src.core.users.service import UserService
    return _singleton("users", lambda: UserService(get_db(), get_notifier()))


def get_token_verifier() -> "TokenVerifier":
    from src.core.users.tokens import TokenVerifier
    return _singleton("tokens", lambda: TokenVerifier(get_db()))


# =============================================================================
# REALTIME
# =============================================================================

def get_realtime_handlers() -> "RealtimeHandlers":
    from src.services.realtime_ws.handlers import RealtimeHandlers
    return _singleton(
        "realtime_handlers",
        lambda: RealtimeHandlers(
            get_hub().manager,
            get_hub(),
            get_db(),
            get_chat_service(),
            get_mechanic_service(),
        ),
    )


def get_connection_limiter() -> "ConnectionRateLimiter":
    from src.config import settings
    from src.services.realtime_ws.rate_limit import ConnectionRateLimiter
    return _singleton(
        "connection_limiter",
        lambda: ConnectionRateLimiter(
            settings.realtime.HANDSHAKE_MAX_ATTEMPTS,
            settings.realtime.HANDSHAKE_WINDOW_SECONDS,
        ),
    )


# =============================================================================
# АВТОРИЗАЦИЯ
# =============================================================================

async def get_current_principal(
    authorization: Optional[str] = Header(None),
) -> Principal:
    """Принципал из заголовка Authorization: Bearer <token>."""
    return await get_token_verifier().verify(extract_bearer(authorization))


async def require_mechanic(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_mechanic:
        raise ForbiddenError("Mechanic role required")
    return principal


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("Admin role required")
    return principal


# =============================================================================
# ПАРАМЕТРЫ ЗАПРОСА
# =============================================================================

def get_pagination(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> PaginationParams:
    return PaginationParams(page=page, limit=limit)


def get_status_filter(status: Optional[str] = Query(None)) -> list[RequestStatus] | None:
    """Фильтр ?status=accepted,on_way (синонимы допускаются)."""
    from src.core.requests.models import parse_status_filter

    try:
        return parse_status_filter(status)
    except ValueError:
        raise ValidationFailedError(f"Unknown status filter: {status}") from None
