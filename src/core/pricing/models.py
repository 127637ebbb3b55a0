# src/core/pricing/models.py
"""
Модели ценообразования.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from src.common.constants import ServiceSkill, VehicleType
from src.shared.models.common import CamelModel, PriceBand


class PricingBand(CamelModel):
    """Рекомендуемый диапазон цены услуги для типа транспорта."""

    vehicle_type: VehicleType
    service: ServiceSkill
    min: float = Field(..., ge=0)
    max: float = Field(..., ge=0)


class PricingPolicy(CamelModel):
    """Политика цен (действует последняя сохранённая)."""

    max_price_delta_fraction: float = Field(0.30, ge=0, le=1)
    default_min: float = Field(100.0, ge=0)
    default_max: float = Field(5000.0, ge=0)
    bands: list[PricingBand] = Field(default_factory=list)
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls) -> "PricingPolicy":
        """Политика по умолчанию из конфига."""
        from src.config import settings
        return cls(
            max_price_delta_fraction=settings.pricing.MAX_PRICE_DELTA_FRACTION,
            default_min=settings.pricing.DEFAULT_MIN,
            default_max=settings.pricing.DEFAULT_MAX,
        )


class PricingPolicyUpdateDTO(CamelModel):
    """Правка политики администратором."""

    max_price_delta_fraction: Optional[float] = Field(None, ge=0, le=1)
    default_min: Optional[float] = Field(None, ge=0)
    default_max: Optional[float] = Field(None, ge=0)
    bands: Optional[list[PricingBand]] = None


class PricedService(CamelModel):
    """Выбранная услуга с рассчитанной ценой."""

    key: str
    label: str = ""
    unit_price: float = 0
    notes: Optional[str] = None


class Estimate(CamelModel):
    """Результат оценки стоимости заявки."""

    vehicle_multiplier: float
    priced_services: list[PricedService] = Field(default_factory=list)
    estimated_cost: float
    estimated_cost_range: PriceBand


class EditDecision(CamelModel):
    """Решение по самостоятельной правке профиля механика."""

    changes: dict[str, Any] = Field(default_factory=dict, description="Очищенные изменения")
    diffs: dict[str, dict[str, Any]] = Field(default_factory=dict, description="{поле: {from, to}}")
    requires_review: bool = False
    reasons: list[str] = Field(default_factory=list)
