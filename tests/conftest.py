# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import json
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("RABBITMQ_ENABLED", "false")
os.environ.setdefault("MAINTENANCE_MODE", "false")

from src.common.constants import (  # noqa: E402
    PaymentStatus,
    RequestStatus,
    UserRole,
    VehicleType,
    VerificationStatus,
)
from src.core.chat.models import Chat, ChatMessage, ChatParticipant  # noqa: E402
from src.core.mechanics.models import Mechanic  # noqa: E402
from src.core.requests.models import PickupLocation, ServiceRequest  # noqa: E402
from src.core.users.models import Principal  # noqa: E402
from src.shared.models.common import GeoPoint, PriceBand  # noqa: E402


JWT_SECRET = os.environ["JWT_SECRET"]

USER_ID = "11111111-1111-1111-1111-111111111111"
MECHANIC_USER_ID = "22222222-2222-2222-2222-222222222222"
ADMIN_ID = "33333333-3333-3333-3333-333333333333"
MECHANIC_ID = "44444444-4444-4444-4444-444444444444"
REQUEST_ID = "55555555-5555-5555-5555-555555555555"
CHAT_ID = "66666666-6666-6666-6666-666666666666"


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "_comment_db": "секция БД",
        "PROJECT_NAME": "roadside_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "PORT": 5002,
        "API_PREFIX": "/api",
        "CLIENT_URL": "http://localhost:3000,http://localhost:5173",
        "LOG_LEVEL": "DEBUG",
        "LOG_FORMAT": "colored",
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "roadside_test",
        "DB_USER": "postgres",
        "DB_UNREACHABLE_GRACE_SECONDS": 15,
        "REDIS_NAMESPACE": "roadside_test",
        "HANDSHAKE_MAX_ATTEMPTS": 5,
        "LOCATION_MIN_INTERVAL_SECONDS": 1.5,
        "DEFAULT_COMMISSION_RATE": 0.15,
        "CURRENCY": "BDT",
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_conn() -> AsyncMock:
    """Мок соединения внутри транзакции."""
    conn = AsyncMock()
    conn.execute = AsyncMock(return_value="UPDATE 1")
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=0)
    return conn


@pytest.fixture
def mock_db(mock_conn: AsyncMock) -> MagicMock:
    """Мок менеджера базы данных."""
    db = MagicMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    db.health_check = AsyncMock(return_value=True)

    @asynccontextmanager
    async def transaction():
        yield mock_conn

    db.transaction = transaction
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.get_model = AsyncMock(return_value=None)
    redis.set_model = AsyncMock(return_value=True)
    redis.publish = AsyncMock(return_value=1)
    redis.health_check = AsyncMock(return_value=True)
    redis.is_connected = True
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


@pytest.fixture
def mock_hub() -> MagicMock:
    """Мок realtime-хаба (RealtimeEmitter)."""
    hub = MagicMock()
    hub.emit = AsyncMock(return_value=1)
    hub.emit_all = AsyncMock(return_value=1)
    return hub


@pytest.fixture
def mock_notifier() -> MagicMock:
    """Мок NotificationService."""
    notifier = MagicMock()
    notifier.emit = AsyncMock(return_value=1)
    notifier.emit_many = AsyncMock(return_value=1)
    notifier.emit_all = AsyncMock(return_value=1)
    notifier.publish = AsyncMock(return_value=None)
    return notifier


# =============================================================================
# ФИКСТУРЫ МОДЕЛЕЙ
# =============================================================================

@pytest.fixture
def user_principal() -> Principal:
    return Principal(id=USER_ID, role=UserRole.USER, name="Rahim")


@pytest.fixture
def mechanic_principal() -> Principal:
    return Principal(id=MECHANIC_USER_ID, role=UserRole.MECHANIC, name="Karim")


@pytest.fixture
def admin_principal() -> Principal:
    return Principal(id=ADMIN_ID, role=UserRole.ADMIN, name="Admin")


def make_mechanic(**overrides: Any) -> Mechanic:
    """Профиль механика с разумными значениями по умолчанию."""
    data: dict[str, Any] = {
        "id": MECHANIC_ID,
        "user_id": MECHANIC_USER_ID,
        "name": "Karim",
        "phone": "+8801700000000",
        "vehicle_types": [VehicleType.CAR],
        "skills": ["tire_change", "battery_jump"],
        "experience_years": 5,
        "rating": 4.5,
        "total_ratings": 10,
        "is_available": True,
        "max_concurrent_jobs": 1,
        "current_location": GeoPoint(lon=90.4125, lat=23.8103),
        "verification_status": VerificationStatus.VERIFIED,
        "price_range": PriceBand(min=200, max=1000),
        "service_prices": {"tire_change": PriceBand(min=300, max=500)},
    }
    data.update(overrides)
    return Mechanic(**data)


def make_request(**overrides: Any) -> ServiceRequest:
    """Заявка с разумными значениями по умолчанию."""
    data: dict[str, Any] = {
        "id": REQUEST_ID,
        "user_id": USER_ID,
        "vehicle_type": VehicleType.CAR,
        "problem_type": "flat_tire",
        "description": "Front left tire is flat",
        "pickup": PickupLocation(longitude=90.4, latitude=23.8, address="Gulshan 1"),
        "status": RequestStatus.PENDING,
        "payment_status": PaymentStatus.NONE,
        "created_at": datetime.now(timezone.utc),
    }
    data.update(overrides)
    return ServiceRequest(**data)


def make_assigned_request(status: RequestStatus = RequestStatus.ACCEPTED, **overrides: Any) -> ServiceRequest:
    return make_request(
        status=status,
        mechanic_id=MECHANIC_ID,
        mechanic_user_id=MECHANIC_USER_ID,
        **overrides,
    )


def make_chat(**overrides: Any) -> Chat:
    data: dict[str, Any] = {
        "id": CHAT_ID,
        "request_id": REQUEST_ID,
        "participants": [
            ChatParticipant(principal_id=USER_ID, role=UserRole.USER),
            ChatParticipant(principal_id=MECHANIC_USER_ID, role=UserRole.MECHANIC),
        ],
    }
    data.update(overrides)
    return Chat(**data)


def make_message(**overrides: Any) -> ChatMessage:
    data: dict[str, Any] = {
        "id": "msg-1",
        "chat_id": CHAT_ID,
        "sender_id": USER_ID,
        "text": "Hello",
        "created_at": datetime.now(timezone.utc),
    }
    data.update(overrides)
    return ChatMessage(**data)


def make_token(user_id: str, ttl: int = 3600, secret: str = JWT_SECRET, **claims: Any) -> str:
    """HS256 токен с userId и exp."""
    import jwt

    payload = {"userId": user_id, "exp": int(time.time()) + ttl, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def mechanic() -> Mechanic:
    return make_mechanic()


@pytest.fixture
def pending_request() -> ServiceRequest:
    return make_request()


def make_websocket() -> MagicMock:
    """Мок fastapi.WebSocket с accept/send_json."""
    websocket = MagicMock()
    websocket.accept = AsyncMock()
    websocket.send_json = AsyncMock()
    return websocket
