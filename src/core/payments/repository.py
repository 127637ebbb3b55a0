# src/core/payments/repository.py
"""
Репозиторий платежей.
Таблица payments: одна completed-запись на заявку (частичный уникальный индекс).
"""

from __future__ import annotations

from typing import Optional

from asyncpg import Connection, Record

from src.common.constants import PaymentMethod, PaymentRecordStatus
from src.core.payments.models import Payment
from src.infra.database import DatabaseManager


_COLUMNS = """
    id, payment_id, request_id, user_id, mechanic_id, amount, method, transaction_id,
    commission_rate, commission_amount, net_to_mechanic, status, created_at
"""


class PaymentRepository:
    """Репозиторий платежей."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def insert(self, payment: Payment, conn: Connection | None = None) -> Payment:
        """
        Сохраняет платёж.

        Raises:
            asyncpg.UniqueViolationError: Дубликат payment_id или второй completed по заявке
        """
        executor = conn or self._db
        row = await executor.fetchrow(
            f"""
            INSERT INTO payments (
                payment_id, request_id, user_id, mechanic_id, amount, method,
                transaction_id, commission_rate, commission_amount, net_to_mechanic, status
            )
            VALUES ($1, $2::uuid, $3::uuid, $4::uuid, $5, $6, $7, $8, $9, $10, $11)
            RETURNING {_COLUMNS}
            """,
            payment.payment_id,
            payment.request_id,
            payment.user_id,
            payment.mechanic_id,
            payment.amount,
            payment.method.value,
            payment.transaction_id,
            payment.commission_rate,
            payment.commission_amount,
            payment.net_to_mechanic,
            payment.status.value,
        )
        return self._row_to_payment(row)

    async def get_by_payment_id(self, payment_id: str) -> Optional[Payment]:
        """Поиск по внешнему PAY-ID или по внутреннему UUID."""
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} FROM payments WHERE payment_id = $1 OR id::text = $1",
            payment_id,
        )
        return self._row_to_payment(row) if row else None

    async def get_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        row = await self._db.fetchrow(
            f"""
            SELECT {_COLUMNS} FROM payments
            WHERE transaction_id = $1
            ORDER BY created_at DESC
            LIMIT 1
            """,
            transaction_id,
        )
        return self._row_to_payment(row) if row else None

    async def list_for_user(self, user_id: str, limit: int, offset: int) -> tuple[list[Payment], int]:
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS} FROM payments
            WHERE user_id = $1::uuid
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            user_id,
            limit,
            offset,
        )
        total = await self._db.fetchval("SELECT count(*) FROM payments WHERE user_id = $1::uuid", user_id)
        return [self._row_to_payment(row) for row in rows], int(total or 0)

    @staticmethod
    def _row_to_payment(row: Record) -> Payment:
        mechanic_id = row["mechanic_id"]
        return Payment(
            id=str(row["id"]),
            payment_id=row["payment_id"],
            request_id=str(row["request_id"]),
            user_id=str(row["user_id"]),
            mechanic_id=str(mechanic_id) if mechanic_id else None,
            amount=float(row["amount"]),
            method=PaymentMethod(row["method"]),
            transaction_id=row["transaction_id"],
            commission_rate=float(row["commission_rate"]),
            commission_amount=float(row["commission_amount"]),
            net_to_mechanic=float(row["net_to_mechanic"]),
            status=PaymentRecordStatus(row["status"]),
            created_at=row["created_at"],
        )
