# src/shared/models/common.py
"""
Общие модели для всех модулей: базовая camelCase модель,
конверт ответа API, пагинация, точки на карте.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


T = TypeVar("T")


class CamelModel(BaseModel):
    """
    Базовая модель: snake_case в Python, camelCase на проводе.
    Принимает оба варианта имён полей на входе.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Словарь для JSON-ответа/realtime-события (camelCase, даты ISO)."""
        return self.model_dump(mode="json", by_alias=True)


class GeoPoint(CamelModel):
    """Точка (долгота, широта)."""

    lon: float = Field(..., description="Долгота")
    lat: float = Field(..., description="Широта")
    updated_at: datetime | None = Field(None, description="Время последнего обновления")

    @property
    def is_usable(self) -> bool:
        """Точка конечна и не является заглушкой (0, 0)."""
        return (
            math.isfinite(self.lon)
            and math.isfinite(self.lat)
            and not (self.lon == 0 and self.lat == 0)
        )


class PriceBand(CamelModel):
    """Диапазон цены {min, max}."""

    min: float = Field(0, ge=0, description="Минимальная цена")
    max: float = Field(0, ge=0, description="Максимальная цена")


class PaginationParams(BaseModel):
    """Параметры пагинации."""

    page: int = Field(default=1, ge=1, description="Номер страницы")
    limit: int = Field(default=20, ge=1, le=100, description="Размер страницы")

    @property
    def offset(self) -> int:
        """Смещение для SQL-запроса."""
        return (self.page - 1) * self.limit


class Page(CamelModel, Generic[T]):
    """Страница результатов."""

    items: list[T]
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def create(cls, items: list[T], total: int, pagination: PaginationParams) -> "Page[T]":
        total_pages = (total + pagination.limit - 1) // pagination.limit
        return cls(
            items=items,
            total=total,
            page=pagination.page,
            limit=pagination.limit,
            total_pages=total_pages,
        )


class ApiResponse(BaseModel):
    """Единый конверт HTTP-ответа {success, message, data?, error?}."""

    success: bool = True
    message: str = ""
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, message: str, data: Any = None) -> dict[str, Any]:
        """Успешный ответ; модели сериализуются в camelCase."""
        return cls(success=True, message=message, data=_to_payload(data)).model_dump(exclude_none=True)


def _to_payload(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    if isinstance(data, list):
        return [_to_payload(item) for item in data]
    if isinstance(data, dict):
        return {key: _to_payload(value) for key, value in data.items()}
    return data


class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""

    service: str
    status: str = "healthy"  # healthy, degraded, unhealthy
    version: str | None = None
    uptime_seconds: float | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)
