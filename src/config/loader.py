# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины - config/config.json.
Секреты и параметры развертывания переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json без служебных _comment_ ключей."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return {k: v for k, v in data.items() if not k.startswith("_comment_")}


def parse_bool(value: Any) -> bool:
    """Приводит значение из env/json к bool ("1", "true", "yes", "on")."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _env(data: dict[str, Any], key: str, default: Any, cast: Callable[[Any], Any] | None = None) -> Any:
    """Значение из окружения, затем из config.json, затем по умолчанию."""
    raw = os.getenv(key)
    value = raw if raw not in (None, "") else data.get(key, default)
    return cast(value) if cast else value


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "roadside"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    WORKER_ID: str = ""


class ServerSettings(BaseModel):
    """Настройки HTTP/WebSocket сервера."""
    HOST: str = "0.0.0.0"
    PORT: int = 5002
    API_PREFIX: str = "/api"
    CLIENT_URL: str = "http://localhost:3000"
    REQUEST_TIMEOUT_SECONDS: float = 45.0

    @property
    def cors_origins(self) -> list[str]:
        """Список разрешённых origin (CLIENT_URL через запятую)."""
        return [origin.strip() for origin in self.CLIENT_URL.split(",") if origin.strip()]


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760


class AuthSettings(BaseModel):
    """Проверка bearer-токенов."""
    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"
    TOKEN_EXPIRY_GRACE_SECONDS: int = 60

    @field_validator("JWT_SECRET", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает секрет из переменных окружения."""
        if not v:
            return os.getenv("JWT_SECRET", "")
        return v


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "roadside"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0
    DB_UNREACHABLE_GRACE_SECONDS: int = 30
    DB_HEALTH_CHECK_INTERVAL: int = 10

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "roadside"
    REDIS_MAX_CONNECTIONS: int = 50

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RedisTTLSettings(BaseModel):
    """Настройки TTL кэша."""
    PROFILE_TTL: int = 300
    REQUEST_TTL: int = 600
    MAINTENANCE_TTL: int = 30
    POLICY_TTL: int = 300


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "roadside.events"
    RABBITMQ_ENABLED: bool = True

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class RealtimeSettings(BaseModel):
    """Лимиты и поведение realtime-хаба."""
    HANDSHAKE_MAX_ATTEMPTS: int = 20
    HANDSHAKE_WINDOW_SECONDS: int = 60
    LOCATION_MIN_INTERVAL_SECONDS: float = 2.0
    CHAT_MAX_MESSAGES: int = 5
    CHAT_WINDOW_SECONDS: float = 5.0
    REDIS_FANOUT: bool = False
    REDIS_CHANNEL_PREFIX: str = "realtime"


class DispatchSettings(BaseModel):
    """Параметры подбора механиков."""
    BROADCAST_RADIUS_KM: float = 20.0
    NEARBY_DEFAULT_RADIUS_M: int = 50000
    MATCH_RADIUS_KM: float = 20.0
    DEFAULT_BASE_RATE: float = 500.0


class ChatSettings(BaseModel):
    """Ограничения чата."""
    MAX_TEXT_LENGTH: int = 2000
    MAX_ATTACHMENTS: int = 5
    MAX_ATTACHMENT_NAMES_LENGTH: int = 1000
    DELETE_ON_COMPLETE: bool = False
    PAGE_LIMIT: int = 50


class PaymentSettings(BaseModel):
    """Настройки учёта платежей."""
    DEFAULT_COMMISSION_RATE: float = 0.10
    CURRENCY: str = "BDT"


class PricingSettings(BaseModel):
    """Политика цен по умолчанию (пока в БД нет строки политики)."""
    MAX_PRICE_DELTA_FRACTION: float = 0.30
    DEFAULT_MIN: float = 100.0
    DEFAULT_MAX: float = 5000.0


class MaintenanceSettings(BaseModel):
    """Начальное значение режима обслуживания."""
    MAINTENANCE_MODE: bool = False
    MAINTENANCE_MESSAGE: str = "Service is under maintenance. Please try again later."


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    redis_ttl: RedisTTLSettings = Field(default_factory=RedisTTLSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    chat: ChatSettings = Field(default_factory=ChatSettings)
    payments: PaymentSettings = Field(default_factory=PaymentSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    maintenance: MaintenanceSettings = Field(default_factory=MaintenanceSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты переопределяются из переменных окружения.
        """
        data = load_config_json()
        get = data.get

        return cls(
            system=SystemSettings(
                PROJECT_NAME=get("PROJECT_NAME", "roadside"),
                VERSION=get("VERSION", "1.0.0"),
                DEBUG=get("DEBUG", True),
                ENVIRONMENT=_env(data, "ENVIRONMENT", "development"),
                WORKER_ID=_env(data, "WORKER_ID", ""),
            ),
            server=ServerSettings(
                HOST=_env(data, "HOST", "0.0.0.0"),
                PORT=_env(data, "PORT", 5002, int),
                API_PREFIX=get("API_PREFIX", "/api"),
                CLIENT_URL=_env(data, "CLIENT_URL", "http://localhost:3000"),
                REQUEST_TIMEOUT_SECONDS=get("REQUEST_TIMEOUT_SECONDS", 45.0),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=_env(data, "LOG_LEVEL", "DEBUG"),
                LOG_TO_FILE=get("LOG_TO_FILE", False),
                LOG_FILE_PATH=get("LOG_FILE_PATH", "logs/app.log"),
                LOG_FORMAT=_env(data, "LOG_FORMAT", "colored"),
                LOG_MAX_BYTES=get("LOG_MAX_BYTES", 10485760),
            ),
            auth=AuthSettings(
                JWT_SECRET=_env(data, "JWT_SECRET", ""),
                JWT_ALGORITHM=get("JWT_ALGORITHM", "HS256"),
                TOKEN_EXPIRY_GRACE_SECONDS=get("TOKEN_EXPIRY_GRACE_SECONDS", 60),
            ),
            database=DatabaseSettings(
                DB_HOST=_env(data, "DB_HOST", "localhost"),
                DB_PORT=_env(data, "DB_PORT", 5432, int),
                DB_NAME=_env(data, "DB_NAME", "roadside"),
                DB_USER=_env(data, "DB_USER", "postgres"),
                DB_PASSWORD=_env(data, "DB_PASSWORD", ""),
                DB_MIN_POOL_SIZE=get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=get("DB_COMMAND_TIMEOUT", 60),
                DB_RETRY_ATTEMPTS=get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=get("DB_RETRY_DELAY", 1.0),
                DB_UNREACHABLE_GRACE_SECONDS=get("DB_UNREACHABLE_GRACE_SECONDS", 30),
                DB_HEALTH_CHECK_INTERVAL=get("DB_HEALTH_CHECK_INTERVAL", 10),
            ),
            redis=RedisSettings(
                REDIS_HOST=_env(data, "REDIS_HOST", "localhost"),
                REDIS_PORT=_env(data, "REDIS_PORT", 6379, int),
                REDIS_DB=get("REDIS_DB", 0),
                REDIS_PASSWORD=_env(data, "REDIS_PASSWORD", ""),
                REDIS_NAMESPACE=get("REDIS_NAMESPACE", "roadside"),
                REDIS_MAX_CONNECTIONS=get("REDIS_MAX_CONNECTIONS", 50),
            ),
            redis_ttl=RedisTTLSettings(
                PROFILE_TTL=get("PROFILE_TTL", 300),
                REQUEST_TTL=get("REQUEST_TTL", 600),
                MAINTENANCE_TTL=get("MAINTENANCE_TTL", 30),
                POLICY_TTL=get("POLICY_TTL", 300),
            ),
            rabbitmq=RabbitMQSettings(
                RABBITMQ_HOST=_env(data, "RABBITMQ_HOST", "localhost"),
                RABBITMQ_PORT=_env(data, "RABBITMQ_PORT", 5672, int),
                RABBITMQ_USER=_env(data, "RABBITMQ_USER", "guest"),
                RABBITMQ_PASSWORD=_env(data, "RABBITMQ_PASSWORD", "guest"),
                RABBITMQ_VHOST=get("RABBITMQ_VHOST", "/"),
                RABBITMQ_EXCHANGE=get("RABBITMQ_EXCHANGE", "roadside.events"),
                RABBITMQ_ENABLED=_env(data, "RABBITMQ_ENABLED", True, parse_bool),
            ),
            realtime=RealtimeSettings(
                HANDSHAKE_MAX_ATTEMPTS=get("HANDSHAKE_MAX_ATTEMPTS", 20),
                HANDSHAKE_WINDOW_SECONDS=get("HANDSHAKE_WINDOW_SECONDS", 60),
                LOCATION_MIN_INTERVAL_SECONDS=get("LOCATION_MIN_INTERVAL_SECONDS", 2.0),
                CHAT_MAX_MESSAGES=get("CHAT_MAX_MESSAGES", 5),
                CHAT_WINDOW_SECONDS=get("CHAT_WINDOW_SECONDS", 5.0),
                REDIS_FANOUT=_env(data, "REALTIME_REDIS_FANOUT", False, parse_bool),
                REDIS_CHANNEL_PREFIX=get("REALTIME_CHANNEL_PREFIX", "realtime"),
            ),
            dispatch=DispatchSettings(
                BROADCAST_RADIUS_KM=get("BROADCAST_RADIUS_KM", 20.0),
                NEARBY_DEFAULT_RADIUS_M=get("NEARBY_DEFAULT_RADIUS_M", 50000),
                MATCH_RADIUS_KM=get("MATCH_RADIUS_KM", 20.0),
                DEFAULT_BASE_RATE=get("DEFAULT_BASE_RATE", 500.0),
            ),
            chat=ChatSettings(
                MAX_TEXT_LENGTH=get("CHAT_MAX_TEXT_LENGTH", 2000),
                MAX_ATTACHMENTS=get("CHAT_MAX_ATTACHMENTS", 5),
                MAX_ATTACHMENT_NAMES_LENGTH=get("CHAT_MAX_ATTACHMENT_NAMES_LENGTH", 1000),
                DELETE_ON_COMPLETE=_env(data, "CHAT_DELETE_ON_COMPLETE", False, parse_bool),
                PAGE_LIMIT=get("CHAT_PAGE_LIMIT", 50),
            ),
            payments=PaymentSettings(
                DEFAULT_COMMISSION_RATE=get("DEFAULT_COMMISSION_RATE", 0.10),
                CURRENCY=get("CURRENCY", "BDT"),
            ),
            pricing=PricingSettings(
                MAX_PRICE_DELTA_FRACTION=get("MAX_PRICE_DELTA_FRACTION", 0.30),
                DEFAULT_MIN=get("PRICE_DEFAULT_MIN", 100.0),
                DEFAULT_MAX=get("PRICE_DEFAULT_MAX", 5000.0),
            ),
            maintenance=MaintenanceSettings(
                MAINTENANCE_MODE=_env(data, "MAINTENANCE_MODE", False, parse_bool),
                MAINTENANCE_MESSAGE=get(
                    "MAINTENANCE_MESSAGE",
                    "Service is under maintenance. Please try again later.",
                ),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
