# src/core/pricing/service.py
"""
Оценка стоимости заявок и проверка правок цен механиком.
"""

from __future__ import annotations

import json
import math
from typing import Any, Optional, Sequence

from src.common.constants import (
    PROTECTED_PROFILE_FIELDS,
    SENSITIVE_PROFILE_FIELDS,
    VEHICLE_MULTIPLIERS,
    ServiceSkill,
)
from src.core.mechanics.models import Mechanic
from src.core.pricing.models import EditDecision, Estimate, PricedService, PricingPolicy
from src.shared.models.common import PriceBand


ALLOWED_SKILLS = frozenset(skill.value for skill in ServiceSkill)


def vehicle_multiplier(vehicle_type: str | None) -> float:
    """Множитель цены по типу транспорта: truck 1.5, bus 1.8, остальные 1."""
    return VEHICLE_MULTIPLIERS.get(str(vehicle_type or "").lower(), 1.0)


def _unit_base(band: PriceBand | None) -> float:
    """Опорная цена услуги: max если > 0, иначе min, иначе 0."""
    if band is None:
        return 0.0
    if band.max > 0:
        return band.max
    return band.min if band.min > 0 else 0.0


def _label(key: str) -> str:
    return key.replace("_", " ").capitalize()


class PricingEvaluator:
    """
    Чистые расчёты цен (без I/O).

    estimate  - оценка заявки при создании;
    evaluate_edit - нужна ли модерация для правки профиля.
    """

    def __init__(self, default_base_rate: float | None = None) -> None:
        if default_base_rate is None:
            from src.config import settings
            default_base_rate = settings.dispatch.DEFAULT_BASE_RATE
        self._default_base_rate = default_base_rate

    # =========================================================================
    # ОЦЕНКА
    # =========================================================================

    def estimate(
        self,
        mechanic: Optional[Mechanic],
        vehicle_type: str,
        selected_services: Sequence[PricedService],
        fallback_cost: float | None = None,
    ) -> Estimate:
        """
        Оценивает стоимость заявки.

        Args:
            mechanic: Выбранный механик (None при широковещательной заявке)
            vehicle_type: Тип транспорта
            selected_services: Выбранные услуги (ключ, подпись, заметки)
            fallback_cost: estimatedCost из запроса клиента

        Returns:
            Estimate с ценами услуг, суммой и диапазоном
        """
        multiplier = vehicle_multiplier(vehicle_type)
        prices = mechanic.service_prices if mechanic else {}

        priced: list[PricedService] = []
        total = 0.0
        range_min = 0.0
        range_max = 0.0

        for entry in selected_services:
            band = prices.get(entry.key)
            unit_price = float(round(multiplier * _unit_base(band)))
            total += unit_price
            priced.append(PricedService(
                key=entry.key,
                label=entry.label or _label(entry.key),
                unit_price=unit_price,
                notes=entry.notes,
            ))
            if band is not None:
                min_adj = round(band.min * multiplier)
                max_adj = round(band.max * multiplier)
                range_min += min_adj
                range_max += max_adj if max_adj > 0 else min_adj

        if selected_services and mechanic is not None:
            cost_range = PriceBand(min=range_min, max=range_max or range_min)
        elif mechanic is not None and mechanic.price_range is not None:
            low = mechanic.price_range.min
            high = mechanic.price_range.max or low
            cost_range = PriceBand(min=round(low * multiplier), max=round(high * multiplier))
        else:
            cost_range = PriceBand(min=0, max=0)

        if total > 0:
            estimated_cost = total
        elif fallback_cost is not None and math.isfinite(fallback_cost) and fallback_cost > 0:
            estimated_cost = float(fallback_cost)
        else:
            estimated_cost = float(self._default_base_rate)

        return Estimate(
            vehicle_multiplier=multiplier,
            priced_services=priced,
            estimated_cost=estimated_cost,
            estimated_cost_range=cost_range,
        )

    # =========================================================================
    # ПРАВКИ ПРОФИЛЯ
    # =========================================================================

    @staticmethod
    def sanitize_service_prices(
        raw: dict[str, Any],
        current: dict[str, PriceBand] | None = None,
    ) -> dict[str, dict[str, float]]:
        """
        Чистит карту цен услуг: неизвестные услуги отбрасываются,
        отрицательные цены обнуляются, перевёрнутый диапазон меняется местами.
        Непереданная граница берётся из текущей цены услуги (иначе 0).
        """
        clean: dict[str, dict[str, float]] = {}
        for key, value in (raw or {}).items():
            if key not in ALLOWED_SKILLS or not isinstance(value, dict):
                continue
            low = value.get("min")
            high = value.get("max")
            has_low = isinstance(low, (int, float))
            has_high = isinstance(high, (int, float))
            if not has_low and not has_high:
                continue
            existing = (current or {}).get(key)
            low_f = max(0.0, float(low)) if has_low else (existing.min if existing else 0.0)
            high_f = max(0.0, float(high)) if has_high else (existing.max if existing else 0.0)
            if low_f > high_f and ((has_low and has_high) or existing is not None):
                low_f, high_f = high_f, low_f
            clean[key] = {"min": low_f, "max": high_f}
        return clean

    @staticmethod
    def merge_price_range(
        mechanic: Mechanic,
        proposed: dict[str, Any],
        policy: PricingPolicy,
    ) -> dict[str, float]:
        """Дополняет частичный priceRange текущими границами (или границами политики)."""
        current_min = mechanic.price_range.min if mechanic.price_range else policy.default_min
        current_max = mechanic.price_range.max if mechanic.price_range else policy.default_max
        low = proposed.get("min")
        high = proposed.get("max")
        next_min = float(low) if low is not None else float(current_min)
        next_max = float(high) if high is not None else float(current_max)
        if next_min > next_max:
            next_min, next_max = next_max, next_min
        return {"min": next_min, "max": next_max}

    def evaluate_edit(
        self,
        mechanic: Mechanic,
        updates: dict[str, Any],
        policy: PricingPolicy,
    ) -> EditDecision:
        """
        Решает, применить правку сразу или отправить на модерацию.

        Модерация нужна, если меняются чувствительные поля (garage, documents)
        или граница priceRange сдвигается больше чем на maxPriceDeltaFraction
        от текущего значения (по умолчанию - defaultMin/defaultMax политики).

        Args:
            mechanic: Текущий профиль
            updates: Изменения в JSON-представлении (snake_case)
            policy: Действующая политика цен

        Returns:
            EditDecision
        """
        changes = {k: v for k, v in updates.items() if k not in PROTECTED_PROFILE_FIELDS}
        if "service_prices" in changes:
            changes["service_prices"] = self.sanitize_service_prices(
                changes["service_prices"], mechanic.service_prices
            )
        if isinstance(changes.get("price_range"), dict):
            changes["price_range"] = self.merge_price_range(mechanic, changes["price_range"], policy)

        current = mechanic.model_dump(mode="json")
        diffs: dict[str, dict[str, Any]] = {}
        for field, value in changes.items():
            before = current.get(field)
            if _canonical(before) != _canonical(value):
                diffs[field] = {"from": before, "to": value}

        reasons: list[str] = []
        for field in SENSITIVE_PROFILE_FIELDS:
            if field in diffs:
                reasons.append(f"sensitive_field:{field}")

        if "price_range" in diffs and isinstance(changes.get("price_range"), dict):
            reasons.extend(self._price_delta_reasons(mechanic, changes["price_range"], policy))

        return EditDecision(
            changes={k: v for k, v in changes.items() if k in diffs},
            diffs=diffs,
            requires_review=bool(reasons),
            reasons=reasons,
        )

    @staticmethod
    def _price_delta_reasons(
        mechanic: Mechanic,
        proposed: dict[str, Any],
        policy: PricingPolicy,
    ) -> list[str]:
        current_min = mechanic.price_range.min if mechanic.price_range else policy.default_min
        current_max = mechanic.price_range.max if mechanic.price_range else policy.default_max
        next_min = float(proposed.get("min", current_min))
        next_max = float(proposed.get("max", current_max))

        reasons = []
        if abs(next_min - current_min) > current_min * policy.max_price_delta_fraction:
            reasons.append("price_delta:min")
        if abs(next_max - current_max) > current_max * policy.max_price_delta_fraction:
            reasons.append("price_delta:max")
        return reasons


def _strip_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_strip_none(item) for item in value]
    return value


def _canonical(value: Any) -> str:
    return json.dumps(_strip_none(value), sort_keys=True, default=str)
