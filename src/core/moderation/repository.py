# src/core/moderation/repository.py
"""
Репозиторий заявок на изменение профиля и журнала правок.
"""

from __future__ import annotations

from typing import Any, Optional

from asyncpg import Connection, Record

from src.common.constants import ChangeRequestStatus
from src.common.ids import is_uuid
from src.core.moderation.models import ChangeLogEntry, ChangeRequest
from src.infra.database import DatabaseManager


_REQUEST_COLUMNS = """
    id, mechanic_id, requested_by, status, fields_changed, reasons,
    reviewer_id, reviewer_notes, decided_at, created_at
"""


class ChangeRequestRepository:
    """Очередь правок на модерации."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def create(
        self,
        mechanic_id: str,
        requested_by: str,
        fields_changed: dict[str, dict[str, Any]],
        reasons: list[str],
    ) -> ChangeRequest:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO mechanic_change_requests (mechanic_id, requested_by, fields_changed, reasons)
            VALUES ($1::uuid, $2::uuid, $3, $4)
            RETURNING {_REQUEST_COLUMNS}
            """,
            mechanic_id,
            requested_by,
            fields_changed,
            reasons,
        )
        return self._row_to_request(row)

    async def get_by_id(self, change_id: str) -> Optional[ChangeRequest]:
        if not is_uuid(change_id):
            return None
        row = await self._db.fetchrow(
            f"SELECT {_REQUEST_COLUMNS} FROM mechanic_change_requests WHERE id = $1::uuid",
            change_id,
        )
        return self._row_to_request(row) if row else None

    async def list_page(
        self,
        status: ChangeRequestStatus | None,
        limit: int,
        offset: int,
    ) -> tuple[list[ChangeRequest], int]:
        """Страница заявок, новые первыми."""
        status_value = status.value if status else None
        rows = await self._db.fetch(
            f"""
            SELECT {_REQUEST_COLUMNS} FROM mechanic_change_requests
            WHERE ($1::text IS NULL OR status = $1::text)
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            status_value,
            limit,
            offset,
        )
        total = await self._db.fetchval(
            "SELECT count(*) FROM mechanic_change_requests WHERE ($1::text IS NULL OR status = $1::text)",
            status_value,
        )
        return [self._row_to_request(row) for row in rows], int(total or 0)

    async def decide(
        self,
        change_id: str,
        status: ChangeRequestStatus,
        reviewer_id: str,
        notes: str | None,
        conn: Connection | None = None,
    ) -> Optional[ChangeRequest]:
        """
        Фиксирует решение. Срабатывает только для pending-заявки.

        Returns:
            Обновлённая заявка или None, если она уже решена
        """
        executor = conn or self._db
        row = await executor.fetchrow(
            f"""
            UPDATE mechanic_change_requests
            SET status = $2, reviewer_id = $3::uuid, reviewer_notes = $4, decided_at = now()
            WHERE id = $1::uuid AND status = 'pending'
            RETURNING {_REQUEST_COLUMNS}
            """,
            change_id,
            status.value,
            reviewer_id,
            notes,
        )
        return self._row_to_request(row) if row else None

    @staticmethod
    def _row_to_request(row: Record) -> ChangeRequest:
        return ChangeRequest(
            id=str(row["id"]),
            mechanic_id=str(row["mechanic_id"]),
            requested_by=str(row["requested_by"]),
            status=ChangeRequestStatus(row["status"]),
            fields_changed=row["fields_changed"] or {},
            reasons=list(row["reasons"] or []),
            reviewer_id=str(row["reviewer_id"]) if row["reviewer_id"] else None,
            reviewer_notes=row["reviewer_notes"],
            decided_at=row["decided_at"],
            created_at=row["created_at"],
        )


class ChangeLogRepository:
    """Журнал применённых правок профиля."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def append(
        self,
        mechanic_id: str,
        changed_by: str,
        source: str,
        fields_changed: dict[str, dict[str, Any]],
        change_request_id: str | None = None,
        conn: Connection | None = None,
    ) -> ChangeLogEntry:
        executor = conn or self._db
        row = await executor.fetchrow(
            """
            INSERT INTO mechanic_change_logs
                (mechanic_id, changed_by, source, change_request_id, fields_changed)
            VALUES ($1::uuid, $2::uuid, $3, $4::uuid, $5)
            RETURNING id, mechanic_id, changed_by, source, change_request_id, fields_changed, created_at
            """,
            mechanic_id,
            changed_by,
            source,
            change_request_id,
            fields_changed,
        )
        return ChangeLogEntry(
            id=str(row["id"]),
            mechanic_id=str(row["mechanic_id"]),
            changed_by=str(row["changed_by"]),
            source=row["source"],
            change_request_id=str(row["change_request_id"]) if row["change_request_id"] else None,
            fields_changed=row["fields_changed"] or {},
            created_at=row["created_at"],
        )
