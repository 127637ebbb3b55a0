# src/core/users/repository.py
"""
Репозиторий пользователей.
"""

from __future__ import annotations

from typing import Optional

from asyncpg import Record

from src.common.constants import UserRole
from src.common.ids import is_uuid
from src.core.users.models import User
from src.infra.database import DatabaseManager


class UserRepository:
    """Репозиторий пользователей."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_by_id(self, user_id: str) -> Optional[User]:
        """
        Получает пользователя по ID.

        Args:
            user_id: UUID пользователя

        Returns:
            Пользователь или None
        """
        if not is_uuid(user_id):
            return None
        row = await self._db.fetchrow(
            """
            SELECT id, name, email, phone, role, is_active, created_at, updated_at
            FROM users
            WHERE id = $1::uuid
            """,
            user_id,
        )
        return self._row_to_user(row) if row else None

    async def set_active(self, user_id: str, active: bool) -> Optional[User]:
        """Включает или блокирует аккаунт. None если пользователя нет."""
        if not is_uuid(user_id):
            return None
        row = await self._db.fetchrow(
            """
            UPDATE users
            SET is_active = $2, updated_at = now()
            WHERE id = $1::uuid
            RETURNING id, name, email, phone, role, is_active, created_at, updated_at
            """,
            user_id,
            active,
        )
        return self._row_to_user(row) if row else None

    @staticmethod
    def _row_to_user(row: Record) -> User:
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            phone=row["phone"],
            role=UserRole(row["role"]),
            is_active=row["is_active"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
