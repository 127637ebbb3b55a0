# src/core/users/models.py
"""
Модели данных пользователей.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import Field

from src.common.constants import UserRole
from src.shared.models.common import CamelModel


class Principal(CamelModel):
    """
    Проверенная личность, от имени которой выполняется операция.
    Выпуск токенов вне этого сервиса: сюда приходит только результат проверки.
    """

    id: str = Field(..., description="UUID пользователя")
    role: UserRole = Field(UserRole.USER, description="Роль")
    name: str = Field("", description="Имя")
    phone: Optional[str] = Field(None, description="Телефон")
    active: bool = Field(True, description="Активен ли аккаунт")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_mechanic(self) -> bool:
        return self.role == UserRole.MECHANIC


class User(CamelModel):
    """Пользователь (строка таблицы users)."""

    id: str = Field(..., description="UUID пользователя")
    name: str = Field(..., description="Имя")
    email: Optional[str] = Field(None, description="Email")
    phone: Optional[str] = Field(None, description="Телефон")
    role: UserRole = Field(UserRole.USER, description="Роль")
    is_active: bool = Field(True, description="Активен ли аккаунт")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_principal(self) -> Principal:
        return Principal(
            id=self.id,
            role=self.role,
            name=self.name,
            phone=self.phone,
            active=self.is_active,
        )
