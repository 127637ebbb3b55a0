# src/core/mechanics/models.py
"""
Модели данных механиков.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Optional

from pydantic import Field, field_validator

from src.common.constants import VehicleType, VerificationStatus
from src.core.geo.distance import haversine_km
from src.shared.models.common import CamelModel, GeoPoint, PriceBand


class WorkingHours(CamelModel):
    """Рабочие часы HH:MM."""

    start: str = Field("08:00", pattern=r"^\d{2}:\d{2}$")
    end: str = Field("20:00", pattern=r"^\d{2}:\d{2}$")


class Mechanic(CamelModel):
    """Профиль механика."""

    id: str = Field(..., description="UUID профиля")
    user_id: str = Field(..., description="UUID пользователя-владельца")
    name: str = Field("", description="Имя (из users)")
    phone: Optional[str] = Field(None, description="Телефон (из users)")

    vehicle_types: list[VehicleType] = Field(default_factory=list, description="Обслуживаемый транспорт")
    skills: list[str] = Field(default_factory=list, description="Услуги")
    experience_years: int = Field(0, ge=0)

    rating: float = Field(5.0, ge=1.0, le=5.0, description="Средний рейтинг")
    total_ratings: int = Field(0, ge=0)
    completed_jobs: int = Field(0, ge=0)

    is_available: bool = True
    max_concurrent_jobs: int = Field(1, ge=1)
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    service_radius_km: int = Field(10, ge=1, le=50)

    current_location: Optional[GeoPoint] = None
    garage_location: Optional[GeoPoint] = None
    garage: dict[str, Any] = Field(default_factory=dict, description="Название/адрес гаража")

    price_range: Optional[PriceBand] = None
    service_prices: dict[str, PriceBand] = Field(default_factory=dict)

    verification_status: VerificationStatus = VerificationStatus.PENDING
    documents: dict[str, Any] = Field(default_factory=dict)
    emergency_contact: Optional[dict[str, Any]] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Заполняется при поиске поблизости
    distance_km: Optional[float] = None

    def distance_from(self, lon: float, lat: float) -> float:
        """
        Расстояние до точки в км: по текущей позиции, иначе по гаражу.
        Без координат возвращает inf (такие механики сортируются в конец).
        """
        for point in (self.current_location, self.garage_location):
            if point is not None and point.is_usable:
                return haversine_km(point.lon, point.lat, lon, lat)
        return math.inf

    def with_distance(self, lon: float, lat: float) -> "Mechanic":
        distance = self.distance_from(lon, lat)
        self.distance_km = round(distance, 2) if math.isfinite(distance) else None
        return self

    @property
    def is_dispatchable(self) -> bool:
        """Видим диспетчеру: верифицирован или на проверке."""
        return self.verification_status in (VerificationStatus.VERIFIED, VerificationStatus.PENDING)


class MechanicReview(CamelModel):
    """Отзыв клиента о механике (хранится в заявке)."""

    id: str = Field(..., description="UUID заявки")
    rating: int
    comment: str = ""
    date: Optional[datetime] = None
    user_id: str
    user_name: str = ""


class AvailabilityUpdateDTO(CamelModel):
    """Переключение доступности."""

    is_available: bool


class LocationUpdateDTO(CamelModel):
    """Обновление текущей позиции механика."""

    longitude: float
    latitude: float

    @field_validator("longitude", "latitude")
    @classmethod
    def finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("coordinate must be finite")
        return v


class VerificationUpdateDTO(CamelModel):
    """Решение администратора по верификации."""

    status: VerificationStatus
    notes: Optional[str] = None


class ProfileUpdateDTO(CamelModel):
    """
    Самостоятельная правка профиля механиком.
    Неизвестные и защищённые поля отбрасываются.
    """

    vehicle_types: Optional[list[VehicleType]] = None
    skills: Optional[list[str]] = None
    experience_years: Optional[int] = Field(None, ge=0)
    max_concurrent_jobs: Optional[int] = Field(None, ge=1)
    working_hours: Optional[WorkingHours] = None
    service_radius_km: Optional[int] = Field(None, ge=1, le=50)
    garage_location: Optional[GeoPoint] = None
    garage: Optional[dict[str, Any]] = None
    price_range: Optional[PriceBand] = None
    service_prices: Optional[dict[str, dict[str, Any]]] = None
    documents: Optional[dict[str, Any]] = None
    emergency_contact: Optional[dict[str, Any]] = None

    @field_validator("garage_location")
    @classmethod
    def usable_location(cls, v: Optional[GeoPoint]) -> Optional[GeoPoint]:
        if v is not None and not v.is_usable:
            raise ValueError("garage location must be a real point")
        return v

    def changes(self) -> dict[str, Any]:
        """Только переданные поля, в JSON-представлении (snake_case)."""
        return self.model_dump(mode="json", exclude_unset=True, exclude_none=True)
