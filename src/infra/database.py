# src/infra/database.py
"""
Пул PostgreSQL для репозиториев.

Репозитории ходят в базу через fetch/fetchrow/fetchval/execute
или берут соединение транзакции: блокировки заявок (SELECT ... FOR UPDATE)
и advisory lock на время применения схемы.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from functools import wraps
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, TypeVar

import asyncpg
from asyncpg import Connection, Pool, Record

from src.common.logger import log_error, log_info
from src.common.constants import TypeMsg

T = TypeVar("T")

# Воркеры, стартующие одновременно, применяют схему по очереди
SCHEMA_LOCK_KEY = 734_221_905

CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    ConnectionRefusedError,
    OSError,
)


def retry_on_connection_error(
    max_attempts: int = 3,
    delay: float = 1.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Повторяет вызов при обрыве связи с PostgreSQL.
    Пауза перед попыткой N равна delay * N. Ошибки запроса не повторяются.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except CONNECTION_ERRORS as e:
                    if attempt >= max_attempts:
                        await log_error(f"PostgreSQL недоступен после {max_attempts} попыток: {e}")
                        raise
                    await log_info(
                        f"Нет связи с PostgreSQL, попытка {attempt}/{max_attempts}: {e}",
                        type_msg=TypeMsg.WARNING,
                    )
                    await asyncio.sleep(delay * attempt)
                    attempt += 1

        return wrapper  # type: ignore[return-value]

    return decorator


async def _register_json_codecs(conn: Connection) -> None:
    # Колонки jsonb (garage, service_prices, diffs, attachments) читаются как dict/list
    for type_name in ("jsonb", "json"):
        await conn.set_type_codec(
            type_name,
            encoder=lambda value: json.dumps(value, default=str),
            decoder=json.loads,
            schema="pg_catalog",
        )


class DatabaseManager:
    """Пул соединений asyncpg (Singleton)."""

    _instance: DatabaseManager | None = None
    _pool: Pool | None = None

    def __new__(cls) -> DatabaseManager:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def pool(self) -> Pool:
        if self._pool is None:
            raise RuntimeError("Пул соединений не инициализирован. Вызовите connect() сначала.")
        return self._pool

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @retry_on_connection_error(max_attempts=3, delay=1.0)
    async def connect(
        self,
        dsn: str,
        min_size: int = 5,
        max_size: int = 20,
        command_timeout: int = 60,
    ) -> None:
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
            init=_register_json_codecs,
        )

    async def disconnect(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Connection, None]:
        """
        Соединение с открытой транзакцией.
        Исключение внутри блока откатывает всё, включая снятые блокировки строк.
        """
        async with self.pool.acquire() as connection:
            async with connection.transaction():
                yield connection

    @retry_on_connection_error()
    async def execute(self, query: str, *args: Any) -> str:
        """Статус команды, например "UPDATE 1"."""
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    @retry_on_connection_error()
    async def fetch(self, query: str, *args: Any) -> list[Record]:
        async with self.pool.acquire() as conn:
            return await conn.fetch(query, *args)

    @retry_on_connection_error()
    async def fetchrow(self, query: str, *args: Any) -> Record | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @retry_on_connection_error()
    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def apply_schema(self, schema_path: Path) -> bool:
        """
        Выполняет migrations/init.sql под advisory lock.

        Returns:
            False если файла схемы нет
        """
        if not schema_path.exists():
            await log_error(f"Файл схемы БД не найден: {schema_path}")
            return False
        schema_sql = schema_path.read_text(encoding="utf-8")
        async with self.transaction() as conn:
            await conn.execute("SELECT pg_advisory_xact_lock($1)", SCHEMA_LOCK_KEY)
            await conn.execute(schema_sql)
        return True

    async def health_check(self) -> bool:
        """SELECT 1 через пул; ошибка логируется и даёт False."""
        if self._pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception as e:
            await log_error(f"Health check PostgreSQL failed: {e}")
            return False


def get_db() -> DatabaseManager:
    return DatabaseManager()


async def init_db() -> None:
    """Пул по настройкам [database] и схема из migrations/init.sql."""
    from src.config import settings
    from src.config.loader import get_project_root

    cfg = settings.database
    db = get_db()
    await db.connect(
        dsn=cfg.dsn,
        min_size=cfg.DB_MIN_POOL_SIZE,
        max_size=cfg.DB_MAX_POOL_SIZE,
        command_timeout=cfg.DB_COMMAND_TIMEOUT,
    )
    await log_info(f"PostgreSQL подключён: {cfg.DB_HOST}:{cfg.DB_PORT}/{cfg.DB_NAME}", type_msg=TypeMsg.INFO)

    if await db.apply_schema(get_project_root() / "migrations" / "init.sql"):
        await log_info("Схема БД применена", type_msg=TypeMsg.INFO)


async def close_db() -> None:
    await get_db().disconnect()
    await log_info("PostgreSQL отключён", type_msg=TypeMsg.INFO)
