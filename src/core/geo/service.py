# src/core/geo/service.py
"""
Поиск доступных механиков поблизости.
Радиус фильтруется в SQL (Haversine), итоговый порядок - в Python.
"""

from __future__ import annotations

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.core.geo.distance import has_point
from src.core.mechanics.models import Mechanic
from src.core.mechanics.repository import MechanicRepository
from src.infra.database import DatabaseManager


class GeoIndex:
    """
    Гео-индекс механиков.

    Два запроса по радиусу (текущая позиция и гараж) объединяются по id:
    механик, найденный по текущей позиции, не дублируется найденным по гаражу.
    """

    def __init__(self, db: DatabaseManager, default_radius_m: int | None = None) -> None:
        if default_radius_m is None:
            from src.config import settings
            default_radius_m = settings.dispatch.NEARBY_DEFAULT_RADIUS_M

        self._repo = MechanicRepository(db)
        self._default_radius_m = default_radius_m

    async def find_available_nearby(
        self,
        lon: float | None,
        lat: float | None,
        vehicle_type: str | None = None,
        radius_m: int | None = None,
        include_unavailable: bool = False,
    ) -> list[Mechanic]:
        """
        Механики, видимые диспетчеру, ближайшие первыми.

        Args:
            lon: Долгота точки (None/0/inf - без гео-фильтра)
            lat: Широта точки
            vehicle_type: Тип транспорта; None или "all" - любой
            radius_m: Радиус в метрах
            include_unavailable: Включать недоступных механиков

        Returns:
            Список механиков с заполненным distance_km
        """
        if vehicle_type in (None, "", "all"):
            vehicle_type = None
        radius_km = (radius_m or self._default_radius_m) / 1000.0

        if not has_point(lon, lat):
            # Без точки: лучшие по рейтингу и опыту
            return await self._repo.list_dispatchable(vehicle_type, include_unavailable)

        by_current = await self._repo.find_within_radius(
            "current", lon, lat, radius_km, vehicle_type, include_unavailable
        )
        by_garage = await self._repo.find_within_radius(
            "garage", lon, lat, radius_km, vehicle_type, include_unavailable
        )

        merged: dict[str, Mechanic] = {}
        for mechanic in [*by_current, *by_garage]:
            merged.setdefault(mechanic.id, mechanic)

        result = sorted(merged.values(), key=lambda m: m.distance_from(lon, lat))
        for mechanic in result:
            mechanic.with_distance(lon, lat)

        await log_info(
            f"Поиск механиков: ({lon}, {lat}) r={radius_km}км тип={vehicle_type or 'all'} найдено={len(result)}",
            type_msg=TypeMsg.DEBUG,
        )
        return result
