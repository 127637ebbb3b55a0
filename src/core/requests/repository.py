# src/core/requests/repository.py
"""
Репозиторий заявок.

Все изменения статуса идут через условный UPDATE (compare-and-set по статусу):
проигравший в гонке получает None, а не перезаписывает чужой переход.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from asyncpg import Connection, Record

from src.common.constants import (
    ACTIVE_REQUEST_STATUSES,
    UNPAYABLE_REQUEST_STATUSES,
    PaymentMethod,
    PaymentStatus,
    Priority,
    RequestStatus,
    VehicleType,
)
from src.common.ids import is_uuid
from src.core.mechanics.models import MechanicReview
from src.core.pricing.models import PricedService
from src.core.requests.models import (
    MechanicStats,
    PickupLocation,
    RatingInfo,
    RequestNote,
    ServiceRequest,
    Timeline,
)
from src.infra.database import DatabaseManager
from src.shared.models.common import PriceBand


_SELECT = """
    SELECT r.*, m.user_id AS mechanic_user_id
    FROM requests r
    LEFT JOIN mechanics m ON m.id = r.mechanic_id
"""

# UPDATE ... RETURNING не видит join, поэтому результат оборачивается в CTE
_RETURNING_JOIN = """
    SELECT u.*, m.user_id AS mechanic_user_id
    FROM updated u
    LEFT JOIN mechanics m ON m.id = u.mechanic_id
"""

# Метки времени ставятся один раз и не перезаписываются
_TIMELINE_SET: dict[RequestStatus, str] = {
    RequestStatus.ACCEPTED: "accepted_at = COALESCE(accepted_at, now())",
    RequestStatus.ON_WAY: (
        "on_way_at = COALESCE(on_way_at, now()), "
        "started_at = COALESCE(started_at, now())"
    ),
    RequestStatus.ARRIVED: "arrived_at = COALESCE(arrived_at, now())",
    RequestStatus.WORKING: "started_at = COALESCE(started_at, now())",
    RequestStatus.COMPLETED: (
        "completed_at = COALESCE(completed_at, now()), "
        "started_at = COALESCE(started_at, arrived_at, accepted_at, requested_at)"
    ),
    RequestStatus.CANCELLED: "cancelled_at = COALESCE(cancelled_at, now())",
}

_ACTIVE_VALUES = [status.value for status in ACTIVE_REQUEST_STATUSES]
_UNPAYABLE_VALUES = [status.value for status in UNPAYABLE_REQUEST_STATUSES]


def _status_values(statuses: Sequence[RequestStatus] | None) -> list[str] | None:
    return [status.value for status in statuses] if statuses else None


class RequestRepository:
    """Репозиторий заявок."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_by_id(self, request_id: str, conn: Connection | None = None) -> Optional[ServiceRequest]:
        if not is_uuid(request_id):
            return None
        executor = conn or self._db
        row = await executor.fetchrow(f"{_SELECT} WHERE r.id = $1::uuid", request_id)
        return self._row_to_request(row) if row else None

    async def lock_for_update(self, request_id: str, conn: Connection) -> Optional[ServiceRequest]:
        """Читает заявку с блокировкой строки до конца транзакции."""
        if not is_uuid(request_id):
            return None
        row = await conn.fetchrow(f"{_SELECT} WHERE r.id = $1::uuid FOR UPDATE OF r", request_id)
        return self._row_to_request(row) if row else None

    async def count_active(self, mechanic_id: str, conn: Connection | None = None) -> int:
        """Число активных заявок механика."""
        executor = conn or self._db
        count = await executor.fetchval(
            "SELECT count(*) FROM requests WHERE mechanic_id = $1::uuid AND status = ANY($2::text[])",
            mechanic_id,
            _ACTIVE_VALUES,
        )
        return int(count or 0)

    async def list_for_user(
        self,
        user_id: str,
        statuses: Sequence[RequestStatus] | None,
        limit: int,
        offset: int,
    ) -> tuple[list[ServiceRequest], int]:
        return await self._list("r.user_id = $1::uuid", user_id, statuses, limit, offset)

    async def list_for_mechanic(
        self,
        mechanic_id: str,
        statuses: Sequence[RequestStatus] | None,
        limit: int,
        offset: int,
    ) -> tuple[list[ServiceRequest], int]:
        return await self._list("r.mechanic_id = $1::uuid", mechanic_id, statuses, limit, offset)

    async def list_all(
        self,
        statuses: Sequence[RequestStatus] | None,
        limit: int,
        offset: int,
    ) -> tuple[list[ServiceRequest], int]:
        return await self._list("$1::text IS NULL", None, statuses, limit, offset)

    async def _list(
        self,
        owner_clause: str,
        owner_id: str | None,
        statuses: Sequence[RequestStatus] | None,
        limit: int,
        offset: int,
    ) -> tuple[list[ServiceRequest], int]:
        where = f"{owner_clause} AND ($2::text[] IS NULL OR r.status = ANY($2::text[]))"
        values = _status_values(statuses)
        rows = await self._db.fetch(
            f"{_SELECT} WHERE {where} ORDER BY r.created_at DESC LIMIT $3 OFFSET $4",
            owner_id,
            values,
            limit,
            offset,
        )
        total = await self._db.fetchval(
            f"SELECT count(*) FROM requests r WHERE {where}",
            owner_id,
            values,
        )
        return [self._row_to_request(row) for row in rows], int(total or 0)

    async def list_reviews(self, mechanic_id: str, limit: int, offset: int) -> tuple[list[MechanicReview], int]:
        """Отзывы клиентов о механике, новые первыми."""
        rows = await self._db.fetch(
            """
            SELECT r.id, r.user_rating, r.user_comment, r.completed_at, r.user_id, u.name
            FROM requests r
            JOIN users u ON u.id = r.user_id
            WHERE r.mechanic_id = $1::uuid AND r.user_rating IS NOT NULL
            ORDER BY r.completed_at DESC NULLS LAST
            LIMIT $2 OFFSET $3
            """,
            mechanic_id,
            limit,
            offset,
        )
        total = await self._db.fetchval(
            "SELECT count(*) FROM requests WHERE mechanic_id = $1::uuid AND user_rating IS NOT NULL",
            mechanic_id,
        )
        reviews = [
            MechanicReview(
                id=str(row["id"]),
                rating=row["user_rating"],
                comment=row["user_comment"] or "",
                date=row["completed_at"],
                user_id=str(row["user_id"]),
                user_name=row["name"] or "",
            )
            for row in rows
        ]
        return reviews, int(total or 0)

    async def mechanic_stats(self, mechanic_id: str) -> MechanicStats:
        row = await self._db.fetchrow(
            """
            SELECT count(*) AS total,
                   count(*) FILTER (WHERE r.status = 'completed') AS completed,
                   count(*) FILTER (WHERE r.status = 'cancelled') AS cancelled,
                   count(*) FILTER (WHERE r.status = ANY($2::text[])) AS active,
                   COALESCE(sum(r.actual_cost) FILTER (
                       WHERE r.payment_status = 'payment_completed'), 0) AS earnings,
                   m.rating, m.total_ratings
            FROM mechanics m
            LEFT JOIN requests r ON r.mechanic_id = m.id
            WHERE m.id = $1::uuid
            GROUP BY m.id
            """,
            mechanic_id,
            _ACTIVE_VALUES,
        )
        if row is None:
            return MechanicStats()
        return MechanicStats(
            total_jobs=row["total"],
            completed_jobs=row["completed"],
            cancelled_jobs=row["cancelled"],
            active_jobs=row["active"],
            total_earnings=float(row["earnings"]),
            rating=float(row["rating"]),
            total_ratings=row["total_ratings"],
        )

    # =========================================================================
    # ЗАПИСЬ
    # =========================================================================

    async def create(self, request: ServiceRequest) -> ServiceRequest:
        """Сохраняет новую заявку в статусе pending."""
        row = await self._db.fetchrow(
            f"""
            WITH updated AS (
                INSERT INTO requests (
                    user_id, mechanic_id, vehicle_type, problem_type, description,
                    pickup_lon, pickup_lat, pickup_address, pickup_landmark,
                    status, priority, is_emergency, selected_services, vehicle_multiplier,
                    estimated_cost, estimated_cost_min, estimated_cost_max
                )
                VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9,
                        'pending', $10, $11, $12, $13, $14, $15, $16)
                RETURNING *
            )
            {_RETURNING_JOIN}
            """,
            request.user_id,
            request.mechanic_id,
            request.vehicle_type.value,
            request.problem_type,
            request.description,
            request.pickup.longitude,
            request.pickup.latitude,
            request.pickup.address,
            request.pickup.landmark,
            request.priority.value,
            request.is_emergency,
            [service.model_dump(mode="json") for service in request.selected_services],
            request.vehicle_multiplier,
            request.estimated_cost,
            request.estimated_cost_range.min,
            request.estimated_cost_range.max,
        )
        return self._row_to_request(row)

    async def lock_mechanic(self, mechanic_id: str, conn: Connection) -> None:
        """Сериализует принятие заявок одним механиком до конца транзакции."""
        await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1::text))", mechanic_id)

    async def accept_if_pending(
        self,
        request_id: str,
        mechanic_id: str,
        estimated_arrival_at: datetime | None,
        estimated_cost: float | None,
        conn: Connection | None = None,
    ) -> Optional[ServiceRequest]:
        """
        Назначает механика, если заявка всё ещё pending.

        Returns:
            Обновлённая заявка или None, если её уже забрали
        """
        executor = conn or self._db
        row = await executor.fetchrow(
            f"""
            WITH updated AS (
                UPDATE requests
                SET status = 'accepted', mechanic_id = $2::uuid,
                    estimated_arrival_at = COALESCE($3, estimated_arrival_at),
                    estimated_cost = COALESCE($4, estimated_cost),
                    {_TIMELINE_SET[RequestStatus.ACCEPTED]},
                    updated_at = now()
                WHERE id = $1::uuid AND status = 'pending'
                RETURNING *
            )
            {_RETURNING_JOIN}
            """,
            request_id,
            mechanic_id,
            estimated_arrival_at,
            estimated_cost,
        )
        return self._row_to_request(row) if row else None

    async def transition(
        self,
        request_id: str,
        expected: RequestStatus,
        target: RequestStatus,
        *,
        actual_cost: float | None = None,
        cancellation_reason: str | None = None,
        note: RequestNote | None = None,
        conn: Connection | None = None,
    ) -> Optional[ServiceRequest]:
        """
        Переводит заявку expected -> target.

        Returns:
            Обновлённая заявка или None, если статус уже изменился
        """
        sets = ["status = $3", "updated_at = now()"]
        if target in _TIMELINE_SET:
            sets.append(_TIMELINE_SET[target])

        args: list[Any] = [request_id, expected.value, target.value]
        if actual_cost is not None:
            args.append(actual_cost)
            sets.append(f"actual_cost = ${len(args)}")
        if cancellation_reason:
            args.append(cancellation_reason)
            sets.append(f"cancellation_reason = ${len(args)}")
        if note is not None:
            args.append([note.model_dump(mode="json")])
            sets.append(f"notes = notes || ${len(args)}::jsonb")

        executor = conn or self._db
        row = await executor.fetchrow(
            f"""
            WITH updated AS (
                UPDATE requests SET {', '.join(sets)}
                WHERE id = $1::uuid AND status = $2
                RETURNING *
            )
            {_RETURNING_JOIN}
            """,
            *args,
        )
        return self._row_to_request(row) if row else None

    async def set_rating(
        self,
        request_id: str,
        by_requester: bool,
        rating: int,
        comment: str | None,
        conn: Connection | None = None,
    ) -> Optional[ServiceRequest]:
        """
        Записывает оценку одной из сторон. Повторная оценка не проходит.

        Returns:
            Обновлённая заявка или None (не completed или уже оценена)
        """
        prefix = "user" if by_requester else "mechanic"
        executor = conn or self._db
        row = await executor.fetchrow(
            f"""
            WITH updated AS (
                UPDATE requests
                SET {prefix}_rating = $2, {prefix}_comment = $3, updated_at = now()
                WHERE id = $1::uuid AND status = 'completed' AND {prefix}_rating IS NULL
                RETURNING *
            )
            {_RETURNING_JOIN}
            """,
            request_id,
            rating,
            comment,
        )
        return self._row_to_request(row) if row else None

    async def mark_paid(
        self,
        request_id: str,
        payment_id: str,
        amount: float,
        method: PaymentMethod,
        conn: Connection,
    ) -> Optional[ServiceRequest]:
        """
        Отмечает заявку оплаченной и завершённой (внутри транзакции платежа).

        Returns:
            Обновлённая заявка или None, если статус заявки не допускает оплату
        """
        row = await conn.fetchrow(
            f"""
            WITH updated AS (
                UPDATE requests
                SET payment_status = 'payment_completed', actual_cost = $2,
                    payment_method = $3, payment_ids = array_append(payment_ids, $4),
                    status = 'completed', {_TIMELINE_SET[RequestStatus.COMPLETED]},
                    updated_at = now()
                WHERE id = $1::uuid AND status <> ALL($5::text[])
                RETURNING *
            )
            {_RETURNING_JOIN}
            """,
            request_id,
            amount,
            method.value,
            payment_id,
            _UNPAYABLE_VALUES,
        )
        return self._row_to_request(row) if row else None

    # =========================================================================
    # МАППИНГ
    # =========================================================================

    @staticmethod
    def _row_to_request(row: Record) -> ServiceRequest:
        mechanic_id = row["mechanic_id"]
        mechanic_user_id = row["mechanic_user_id"]
        payment_method = row["payment_method"]
        return ServiceRequest(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            mechanic_id=str(mechanic_id) if mechanic_id else None,
            mechanic_user_id=str(mechanic_user_id) if mechanic_user_id else None,
            vehicle_type=VehicleType(row["vehicle_type"]),
            problem_type=row["problem_type"],
            description=row["description"],
            pickup=PickupLocation(
                longitude=row["pickup_lon"],
                latitude=row["pickup_lat"],
                address=row["pickup_address"] or "",
                landmark=row["pickup_landmark"],
            ),
            status=RequestStatus(row["status"]),
            priority=Priority(row["priority"]),
            is_emergency=row["is_emergency"],
            selected_services=[PricedService(**item) for item in row["selected_services"] or []],
            vehicle_multiplier=row["vehicle_multiplier"],
            estimated_cost=row["estimated_cost"],
            estimated_cost_range=PriceBand(
                min=row["estimated_cost_min"] or 0,
                max=row["estimated_cost_max"] or 0,
            ),
            actual_cost=row["actual_cost"],
            estimated_arrival_at=row["estimated_arrival_at"],
            payment_status=PaymentStatus(row["payment_status"]),
            payment_method=PaymentMethod(payment_method) if payment_method else None,
            payment_ids=list(row["payment_ids"] or []),
            timeline=Timeline(
                requested_at=row["requested_at"],
                accepted_at=row["accepted_at"],
                on_way_at=row["on_way_at"],
                arrived_at=row["arrived_at"],
                started_at=row["started_at"],
                completed_at=row["completed_at"],
                cancelled_at=row["cancelled_at"],
            ),
            rating=RatingInfo(
                user_rating=row["user_rating"],
                user_comment=row["user_comment"],
                mechanic_rating=row["mechanic_rating"],
                mechanic_comment=row["mechanic_comment"],
            ),
            cancellation_reason=row["cancellation_reason"],
            notes=[RequestNote(**note) for note in row["notes"] or []],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def make_note(author: str, content: str) -> RequestNote:
    """Заметка с текущим временем."""
    return RequestNote(author=author, content=content, ts=datetime.now(timezone.utc))
