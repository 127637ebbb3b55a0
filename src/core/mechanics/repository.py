# src/core/mechanics/repository.py
"""
Репозиторий профилей механиков.
Координаты хранятся парами (lon, lat); отсутствие точки - NULL.
"""

from __future__ import annotations

from typing import Any, Optional

from asyncpg import Connection, Record

from src.common.constants import VerificationStatus
from src.common.ids import is_uuid
from src.core.geo.distance import haversine_sql
from src.core.mechanics.models import Mechanic
from src.infra.database import DatabaseManager
from src.shared.models.common import GeoPoint, PriceBand


_COLUMNS = """
    m.id, m.user_id, u.name, u.phone,
    m.vehicle_types, m.skills, m.experience_years,
    m.rating, m.total_ratings, m.completed_jobs,
    m.is_available, m.max_concurrent_jobs, m.working_hours, m.service_radius_km,
    m.current_lon, m.current_lat, m.current_location_updated_at,
    m.garage_lon, m.garage_lat, m.garage,
    m.price_range, m.service_prices, m.verification_status,
    m.documents, m.emergency_contact, m.created_at, m.updated_at
"""

_FROM = "FROM mechanics m JOIN users u ON u.id = m.user_id"

# Текущая позиция подтягивается из гаража, если не задана
_LOCATION_FALLBACK = """
    current_location_updated_at = CASE
        WHEN current_lon IS NULL THEN now() ELSE current_location_updated_at END,
    current_lon = COALESCE(current_lon, garage_lon),
    current_lat = COALESCE(current_lat, garage_lat)
"""

_DISPATCH_FILTER = """
    m.verification_status IN ('verified', 'pending')
    AND u.is_active
    AND ($1::boolean OR m.is_available)
    AND ($2::text IS NULL OR $2::text = ANY(m.vehicle_types))
"""

# Поля профиля -> колонки (garage_location раскладывается на две колонки)
_PROFILE_COLUMNS: dict[str, str] = {
    "vehicle_types": "vehicle_types",
    "skills": "skills",
    "experience_years": "experience_years",
    "max_concurrent_jobs": "max_concurrent_jobs",
    "working_hours": "working_hours",
    "service_radius_km": "service_radius_km",
    "garage": "garage",
    "price_range": "price_range",
    "service_prices": "service_prices",
    "documents": "documents",
    "emergency_contact": "emergency_contact",
}


class MechanicRepository:
    """Репозиторий механиков."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_by_id(self, mechanic_id: str) -> Optional[Mechanic]:
        if not is_uuid(mechanic_id):
            return None
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} {_FROM} WHERE m.id = $1::uuid",
            mechanic_id,
        )
        return self._row_to_mechanic(row) if row else None

    async def get_by_user_id(self, user_id: str) -> Optional[Mechanic]:
        """Профиль механика по UUID пользователя-владельца."""
        if not is_uuid(user_id):
            return None
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} {_FROM} WHERE m.user_id = $1::uuid",
            user_id,
        )
        return self._row_to_mechanic(row) if row else None

    # =========================================================================
    # ГЕО-ПОИСК
    # =========================================================================

    async def list_dispatchable(
        self,
        vehicle_type: str | None,
        include_unavailable: bool = False,
        limit: int = 100,
    ) -> list[Mechanic]:
        """Все видимые диспетчеру механики: лучшие рейтинги первыми."""
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS} {_FROM}
            WHERE {_DISPATCH_FILTER}
            ORDER BY m.rating DESC, m.completed_jobs DESC
            LIMIT $3
            """,
            include_unavailable,
            vehicle_type,
            limit,
        )
        return [self._row_to_mechanic(row) for row in rows]

    async def find_within_radius(
        self,
        anchor: str,
        lon: float,
        lat: float,
        radius_km: float,
        vehicle_type: str | None,
        include_unavailable: bool = False,
        limit: int = 100,
    ) -> list[Mechanic]:
        """
        Механики в радиусе от точки по одной из опорных координат.

        Args:
            anchor: "current" (текущая позиция) или "garage"
        """
        if anchor not in ("current", "garage"):
            raise ValueError(f"Unknown anchor: {anchor}")

        distance = haversine_sql(f"m.{anchor}_lat", f"m.{anchor}_lon", "$4", "$3")
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS} {_FROM}
            WHERE {_DISPATCH_FILTER}
              AND m.{anchor}_lat IS NOT NULL
              AND {distance} <= $5
            ORDER BY {distance}
            LIMIT $6
            """,
            include_unavailable,
            vehicle_type,
            lon,
            lat,
            radius_km,
            limit,
        )
        return [self._row_to_mechanic(row) for row in rows]

    # =========================================================================
    # ОБНОВЛЕНИЯ
    # =========================================================================

    async def set_availability(self, mechanic_id: str, is_available: bool) -> Optional[Mechanic]:
        """Переключает доступность; при включении без позиции берётся гараж."""
        if not is_uuid(mechanic_id):
            return None
        row = await self._db.fetchrow(
            f"""
            UPDATE mechanics
            SET is_available = $2, updated_at = now(), {_LOCATION_FALLBACK}
            WHERE id = $1::uuid
            RETURNING id
            """,
            mechanic_id,
            is_available,
        )
        return await self.get_by_id(mechanic_id) if row else None

    async def update_location(self, mechanic_id: str, lon: float, lat: float) -> Optional[Mechanic]:
        row = await self._db.fetchrow(
            """
            UPDATE mechanics
            SET current_lon = $2, current_lat = $3,
                current_location_updated_at = now(), updated_at = now()
            WHERE id = $1::uuid
            RETURNING id
            """,
            mechanic_id,
            lon,
            lat,
        )
        return await self.get_by_id(mechanic_id) if row else None

    async def apply_changes(
        self,
        mechanic_id: str,
        changes: dict[str, Any],
        conn: Connection | None = None,
    ) -> bool:
        """
        Применяет правку профиля (значения в JSON-представлении).
        Неизвестные поля игнорируются.

        Returns:
            True если профиль найден
        """
        sets: list[str] = []
        args: list[Any] = [mechanic_id]

        for field, column in _PROFILE_COLUMNS.items():
            if field in changes:
                args.append(changes[field])
                sets.append(f"{column} = ${len(args)}")

        garage_location = changes.get("garage_location")
        if garage_location:
            args.append(float(garage_location["lon"]))
            lon_ref = f"${len(args)}"
            args.append(float(garage_location["lat"]))
            lat_ref = f"${len(args)}"
            sets.append(f"garage_lon = {lon_ref}")
            sets.append(f"garage_lat = {lat_ref}")
            # В SET видны старые значения колонок, поэтому fallback берёт новый гараж из параметров
            sets.append(
                "current_location_updated_at = CASE WHEN current_lon IS NULL "
                "THEN now() ELSE current_location_updated_at END"
            )
            sets.append(f"current_lon = COALESCE(current_lon, {lon_ref})")
            sets.append(f"current_lat = COALESCE(current_lat, {lat_ref})")
        else:
            sets.append(_LOCATION_FALLBACK)

        sets.append("updated_at = now()")

        executor = conn or self._db
        row = await executor.fetchrow(
            f"UPDATE mechanics SET {', '.join(sets)} WHERE id = $1::uuid RETURNING id",
            *args,
        )
        return row is not None

    async def update_rating(
        self,
        mechanic_id: str,
        new_rating: int,
        conn: Connection | None = None,
    ) -> Optional[float]:
        """
        Инкрементально пересчитывает средний рейтинг:
        round1((avg * n + new) / (n + 1)).

        Returns:
            Новый средний рейтинг или None
        """
        executor = conn or self._db
        row = await executor.fetchrow(
            """
            UPDATE mechanics
            SET rating = round(((rating * total_ratings + $2) / (total_ratings + 1))::numeric, 1),
                total_ratings = total_ratings + 1,
                updated_at = now()
            WHERE id = $1::uuid
            RETURNING rating
            """,
            mechanic_id,
            new_rating,
        )
        return float(row["rating"]) if row else None

    async def increment_completed_jobs(self, mechanic_id: str, conn: Connection | None = None) -> None:
        executor = conn or self._db
        await executor.execute(
            """
            UPDATE mechanics
            SET completed_jobs = completed_jobs + 1, updated_at = now()
            WHERE id = $1::uuid
            """,
            mechanic_id,
        )

    async def set_verification(self, mechanic_id: str, status: VerificationStatus) -> Optional[Mechanic]:
        if not is_uuid(mechanic_id):
            return None
        row = await self._db.fetchrow(
            """
            UPDATE mechanics
            SET verification_status = $2, updated_at = now()
            WHERE id = $1::uuid
            RETURNING id
            """,
            mechanic_id,
            status.value,
        )
        return await self.get_by_id(mechanic_id) if row else None

    async def backfill_current_location(self) -> int:
        """Заполняет текущую позицию из гаража у всех механиков без позиции."""
        status = await self._db.execute(
            """
            UPDATE mechanics
            SET current_lon = garage_lon,
                current_lat = garage_lat,
                current_location_updated_at = now(),
                updated_at = now()
            WHERE current_lon IS NULL OR current_lat IS NULL
            """
        )
        # asyncpg возвращает статус вида "UPDATE 3"
        return int(status.split()[-1]) if status else 0

    # =========================================================================
    # МАППИНГ
    # =========================================================================

    @staticmethod
    def _point(lon: Any, lat: Any, updated_at: Any = None) -> Optional[GeoPoint]:
        if lon is None or lat is None:
            return None
        point = GeoPoint(lon=float(lon), lat=float(lat), updated_at=updated_at)
        return point if point.is_usable else None

    @classmethod
    def _row_to_mechanic(cls, row: Record) -> Mechanic:
        price_range = row["price_range"]
        return Mechanic(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"] or "",
            phone=row["phone"],
            vehicle_types=list(row["vehicle_types"] or []),
            skills=list(row["skills"] or []),
            experience_years=row["experience_years"],
            rating=float(row["rating"]),
            total_ratings=row["total_ratings"],
            completed_jobs=row["completed_jobs"],
            is_available=row["is_available"],
            max_concurrent_jobs=row["max_concurrent_jobs"],
            working_hours=row["working_hours"] or {},
            service_radius_km=row["service_radius_km"],
            current_location=cls._point(
                row["current_lon"], row["current_lat"], row["current_location_updated_at"]
            ),
            garage_location=cls._point(row["garage_lon"], row["garage_lat"]),
            garage=row["garage"] or {},
            price_range=PriceBand(**price_range) if price_range else None,
            service_prices={
                key: PriceBand(**value) for key, value in (row["service_prices"] or {}).items()
            },
            verification_status=VerificationStatus(row["verification_status"]),
            documents=row["documents"] or {},
            emergency_contact=row["emergency_contact"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
