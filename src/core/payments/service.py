# src/core/payments/service.py
"""
Учёт платежей.
Фиксирует оплату заявки, считает комиссию и завершает заявку.
"""

from __future__ import annotations

import math
import secrets
import string
import time
from typing import Optional

from asyncpg.exceptions import UniqueViolationError

from src.common.constants import (
    ROOM_ADMINS,
    PaymentMethod,
    PaymentStatus,
    UNPAYABLE_REQUEST_STATUSES,
    RequestStatus,
    TypeMsg,
    request_room,
    user_room,
)
from src.common.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from src.common.logger import log_info, log_error
from src.core.mechanics.repository import MechanicRepository
from src.core.notifications.service import NotificationService
from src.core.payments.models import Invoice, InvoiceLine, Payment, round2
from src.core.payments.repository import PaymentRepository
from src.core.requests.models import ServiceRequest
from src.core.requests.repository import RequestRepository
from src.core.requests.service import LifecycleService
from src.core.users.models import Principal
from src.core.users.repository import UserRepository
from src.infra.database import DatabaseManager
from src.infra.event_bus import EventTypes
from src.shared.models.common import Page, PaginationParams


_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_payment_id() -> str:
    """Внешний ID вида PAY-<unix-ms>-<6 символов A-Z0-9>."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"PAY-{int(time.time() * 1000)}-{suffix}"


class PaymentService:
    """
    Сервис платежей.

    Идемпотентность: проверка payment_status под блокировкой строки заявки
    плюс уникальный индекс на completed-платёж заявки.
    """

    def __init__(
        self,
        db: DatabaseManager,
        notifier: NotificationService,
        lifecycle: LifecycleService | None = None,
    ) -> None:
        from src.config import settings

        self._db = db
        self._repo = PaymentRepository(db)
        self._requests = RequestRepository(db)
        self._mechanics = MechanicRepository(db)
        self._users = UserRepository(db)
        self._notifier = notifier
        self._lifecycle = lifecycle
        self._default_commission = settings.payments.DEFAULT_COMMISSION_RATE
        self._currency = settings.payments.CURRENCY

    # =========================================================================
    # ФИКСАЦИЯ ОПЛАТЫ
    # =========================================================================

    async def record_payment(
        self,
        principal: Principal,
        request_id: str,
        amount: float,
        method: PaymentMethod,
        commission_rate: float | None = None,
        transaction_id: str | None = None,
    ) -> tuple[Payment, ServiceRequest]:
        """
        Фиксирует оплату заявки.

        Args:
            principal: Заявитель или администратор
            request_id: ID заявки
            amount: Сумма (> 0)
            method: Способ оплаты
            commission_rate: Доля платформы (по умолчанию из конфига)
            transaction_id: Внешний ID транзакции (по умолчанию <METHOD>-<ms>)

        Returns:
            (платёж, обновлённая заявка)

        Raises:
            NotFoundError: Заявка не найдена
            ForbiddenError: Не заявитель и не администратор
            ConflictError: Уже оплачена или оплата в этом статусе невозможна
            ValidationFailedError: Некорректная сумма или комиссия
        """
        request = await self._requests.get_by_id(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        if not principal.is_admin and request.user_id != principal.id:
            raise ForbiddenError("Only the requester can pay for this request")
        if request.payment_status == PaymentStatus.PAYMENT_COMPLETED:
            raise ConflictError("Payment already completed for this request")
        if request.status in UNPAYABLE_REQUEST_STATUSES:
            raise ConflictError(f"Cannot pay for a request in status {request.status.value}")

        if not math.isfinite(amount) or amount <= 0:
            raise ValidationFailedError("Amount must be a positive number")
        rate = self._default_commission if commission_rate is None else commission_rate
        if not 0 <= rate <= 1:
            raise ValidationFailedError("Commission rate must be between 0 and 1")

        commission = round2(amount * rate)
        draft = Payment(
            id="",
            payment_id=generate_payment_id(),
            request_id=request.id,
            user_id=request.user_id,
            mechanic_id=request.mechanic_id,
            amount=round2(amount),
            method=method,
            transaction_id=transaction_id or f"{method.value.upper()}-{int(time.time() * 1000)}",
            commission_rate=rate,
            commission_amount=commission,
            net_to_mechanic=round2(amount - commission),
        )

        try:
            async with self._db.transaction() as conn:
                locked = await self._requests.lock_for_update(request.id, conn)
                if locked is None:
                    raise NotFoundError("Request not found")
                if locked.payment_status == PaymentStatus.PAYMENT_COMPLETED:
                    raise ConflictError("Payment already completed for this request")
                if locked.status in UNPAYABLE_REQUEST_STATUSES:
                    raise ConflictError(f"Cannot pay for a request in status {locked.status.value}")

                payment = await self._repo.insert(draft, conn=conn)
                updated = await self._requests.mark_paid(
                    request.id, payment.payment_id, payment.amount, method, conn
                )
                if updated is None:
                    raise ConflictError("Request status changed, payment was not recorded")
                was_completed = locked.status == RequestStatus.COMPLETED
                if not was_completed and locked.mechanic_id:
                    await self._mechanics.increment_completed_jobs(locked.mechanic_id, conn=conn)
        except UniqueViolationError as e:
            await log_error(f"Повторная оплата заявки {request.id}: {e}")
            raise ConflictError("Payment already completed for this request") from e

        await log_info(
            f"Платёж {payment.payment_id} по заявке {request.id}: {payment.amount} {self._currency} "
            f"({method.value}), комиссия {payment.commission_amount}",
            type_msg=TypeMsg.INFO,
        )

        if self._lifecycle is not None:
            await self._lifecycle.after_payment_completion(updated, was_completed)
        await self._notify_completed(updated, payment)
        return payment, updated

    async def _notify_completed(self, request: ServiceRequest, payment: Payment) -> None:
        base = {"requestId": request.id, "amount": payment.amount, "paymentId": payment.payment_id}
        await self._notifier.emit_many(
            [request_room(request.id), user_room(request.user_id)],
            "payment:completed",
            base,
        )
        if request.mechanic_user_id:
            await self._notifier.emit(
                user_room(request.mechanic_user_id),
                "payment:completed",
                {**base, "net": payment.net_to_mechanic},
            )
        await self._notifier.emit(
            ROOM_ADMINS,
            "payment:completed",
            {**base, "commission": payment.commission_amount},
        )
        await self._notifier.publish(
            EventTypes.PAYMENT_COMPLETED,
            {
                "payment_id": payment.payment_id,
                "request_id": request.id,
                "amount": payment.amount,
                "commission_amount": payment.commission_amount,
                "net_to_mechanic": payment.net_to_mechanic,
                "method": payment.method.value,
            },
        )

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def _owned(self, principal: Principal, payment: Optional[Payment]) -> Payment:
        if payment is None:
            raise NotFoundError("Payment not found")
        if not principal.is_admin and payment.user_id != principal.id:
            raise ForbiddenError("Access denied")
        return payment

    async def get_payment(self, principal: Principal, payment_id: str) -> Payment:
        return await self._owned(principal, await self._repo.get_by_payment_id(payment_id))

    async def verify_transaction(self, principal: Principal, transaction_id: str) -> Payment:
        """Платёж по внешнему ID транзакции."""
        return await self._owned(principal, await self._repo.get_by_transaction(transaction_id))

    async def history(self, principal: Principal, pagination: PaginationParams) -> Page[Payment]:
        items, total = await self._repo.list_for_user(principal.id, pagination.limit, pagination.offset)
        return Page[Payment].create(items, total, pagination)

    async def invoice(self, principal: Principal, payment_id: str) -> Invoice:
        """
        Данные счёта по платежу.

        Строки счёта - выбранные услуги заявки; если их нет, одна строка
        с типом проблемы на всю сумму.
        """
        payment = await self.get_payment(principal, payment_id)
        request = await self._requests.get_by_id(payment.request_id)
        if request is None:
            raise NotFoundError("Request not found")

        customer = await self._users.get_by_id(payment.user_id)
        mechanic = await self._mechanics.get_by_id(payment.mechanic_id) if payment.mechanic_id else None

        lines = [
            InvoiceLine(label=service.label or service.key, amount=service.unit_price)
            for service in request.selected_services
            if service.unit_price > 0
        ]
        if not lines:
            lines = [InvoiceLine(label=request.problem_type, amount=payment.amount)]

        return Invoice(
            payment_id=payment.payment_id,
            request_id=request.id,
            issued_at=payment.created_at,
            currency=self._currency,
            customer_name=customer.name if customer else "",
            mechanic_name=mechanic.name if mechanic else "",
            vehicle_type=request.vehicle_type.value,
            problem_type=request.problem_type,
            lines=lines,
            total=payment.amount,
            commission_amount=payment.commission_amount,
            net_to_mechanic=payment.net_to_mechanic,
            method=payment.method,
            transaction_id=payment.transaction_id,
        )
