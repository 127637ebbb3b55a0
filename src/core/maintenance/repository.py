# src/core/maintenance/repository.py
"""
Репозиторий настроек платформы (ключ -> JSONB).
"""

from __future__ import annotations

from typing import Any

from asyncpg import Connection

from src.infra.database import DatabaseManager


class SettingsRepository:
    """Таблица settings."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get(self, key: str, default: Any = None) -> Any:
        value = await self._db.fetchval("SELECT value FROM settings WHERE key = $1", key)
        return default if value is None else value

    async def get_all(self) -> dict[str, Any]:
        rows = await self._db.fetch("SELECT key, value FROM settings ORDER BY key")
        return {row["key"]: row["value"] for row in rows}

    async def set(self, key: str, value: Any, conn: Connection | None = None) -> None:
        executor = conn or self._db
        await executor.execute(
            """
            INSERT INTO settings (key, value) VALUES ($1, $2)
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
            """,
            key,
            value,
        )

    async def set_default(self, key: str, value: Any) -> bool:
        """Записывает значение, только если ключа ещё нет."""
        status = await self._db.execute(
            "INSERT INTO settings (key, value) VALUES ($1, $2) ON CONFLICT (key) DO NOTHING",
            key,
            value,
        )
        return status.endswith(" 1")

    async def append(self, key: str, item: dict[str, Any], conn: Connection | None = None) -> None:
        """Добавляет элемент в JSON-массив под ключом (создаёт массив при отсутствии)."""
        executor = conn or self._db
        await executor.execute(
            """
            INSERT INTO settings (key, value) VALUES ($1, jsonb_build_array($2::jsonb))
            ON CONFLICT (key) DO UPDATE
            SET value = COALESCE(settings.value, '[]'::jsonb) || jsonb_build_array($2::jsonb),
                updated_at = now()
            """,
            key,
            item,
        )
