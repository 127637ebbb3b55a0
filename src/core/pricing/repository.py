# src/core/pricing/repository.py
"""
Хранилище политики цен. Строки не перезаписываются: действует последняя.
"""

from __future__ import annotations

from typing import Optional

from asyncpg import Record

from src.core.pricing.models import PricingPolicy
from src.infra.database import DatabaseManager


class PricingPolicyRepository:
    """Репозиторий политики цен."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_latest(self) -> Optional[PricingPolicy]:
        row = await self._db.fetchrow(
            """
            SELECT max_price_delta_fraction, default_min, default_max, bands, updated_by, created_at
            FROM pricing_policies
            ORDER BY id DESC
            LIMIT 1
            """
        )
        return self._row_to_policy(row) if row else None

    async def save(self, policy: PricingPolicy, updated_by: str | None) -> PricingPolicy:
        """Сохраняет новую версию политики."""
        row = await self._db.fetchrow(
            """
            INSERT INTO pricing_policies (max_price_delta_fraction, default_min, default_max, bands, updated_by)
            VALUES ($1, $2, $3, $4, $5::uuid)
            RETURNING max_price_delta_fraction, default_min, default_max, bands, updated_by, created_at
            """,
            policy.max_price_delta_fraction,
            policy.default_min,
            policy.default_max,
            [band.model_dump(mode="json") for band in policy.bands],
            updated_by,
        )
        return self._row_to_policy(row)

    @staticmethod
    def _row_to_policy(row: Record) -> PricingPolicy:
        return PricingPolicy(
            max_price_delta_fraction=row["max_price_delta_fraction"],
            default_min=row["default_min"],
            default_max=row["default_max"],
            bands=row["bands"] or [],
            updated_by=str(row["updated_by"]) if row["updated_by"] else None,
            created_at=row["created_at"],
        )
