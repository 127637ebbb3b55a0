# tests/core/test_payment_service.py
"""
Тесты учёта платежей.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from asyncpg.exceptions import UniqueViolationError

from conftest import (
    MECHANIC_ID,
    MECHANIC_USER_ID,
    REQUEST_ID,
    USER_ID,
    make_assigned_request,
    make_mechanic,
    make_request,
)
from src.common.constants import (
    ROOM_ADMINS,
    PaymentMethod,
    PaymentStatus,
    RequestStatus,
    UserRole,
    request_room,
    user_room,
)
from src.common.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from src.core.payments.models import Payment, RecordPaymentDTO, round2
from src.core.payments.service import PaymentService, generate_payment_id
from src.core.pricing.models import PricedService
from src.core.users.models import Principal, User
from src.infra.event_bus import EventTypes
from src.shared.models.common import PaginationParams


def _stored(draft: Payment, conn: Any = None) -> Payment:
    return draft.model_copy(update={"id": "row-1", "created_at": datetime.now(timezone.utc)})


def _payment(**overrides: Any) -> Payment:
    data: dict[str, Any] = {
        "id": "row-1",
        "payment_id": "PAY-1714564800000-AB12CD",
        "request_id": REQUEST_ID,
        "user_id": USER_ID,
        "mechanic_id": MECHANIC_ID,
        "amount": 1000.0,
        "method": PaymentMethod.BKASH,
        "transaction_id": "BKASH-1",
        "commission_rate": 0.1,
        "commission_amount": 100.0,
        "net_to_mechanic": 900.0,
    }
    data.update(overrides)
    return Payment(**data)


@pytest.fixture
def lifecycle() -> MagicMock:
    lifecycle = MagicMock()
    lifecycle.after_payment_completion = AsyncMock()
    return lifecycle


@pytest.fixture
def service(mock_db: MagicMock, mock_notifier: MagicMock, lifecycle: MagicMock) -> PaymentService:
    service = PaymentService(mock_db, mock_notifier, lifecycle=lifecycle)
    service._repo = AsyncMock()
    service._repo.insert = AsyncMock(side_effect=_stored)
    service._requests = AsyncMock()
    service._mechanics = AsyncMock()
    service._users = AsyncMock()

    working = make_assigned_request(RequestStatus.WORKING)
    service._requests.get_by_id = AsyncMock(return_value=working)
    service._requests.lock_for_update = AsyncMock(return_value=working)
    service._requests.mark_paid = AsyncMock(
        return_value=make_assigned_request(
            RequestStatus.COMPLETED, payment_status=PaymentStatus.PAYMENT_COMPLETED
        )
    )
    return service


class TestHelpers:
    """Тесты вспомогательных функций."""

    def test_payment_id_format(self) -> None:
        assert re.fullmatch(r"PAY-\d{13}-[A-Z0-9]{6}", generate_payment_id())

    def test_payment_ids_unique(self) -> None:
        assert len({generate_payment_id() for _ in range(50)}) == 50

    def test_round2(self) -> None:
        assert round2(99.999) == 100.0
        assert round2(10) == 10.0


class TestRecordPayment:
    """Тесты фиксации оплаты."""

    @pytest.mark.asyncio
    async def test_record_completes_request(
        self,
        service: PaymentService,
        lifecycle: MagicMock,
        user_principal: Principal,
    ) -> None:
        """Оплата активной заявки завершает её и увеличивает счётчик механика."""
        payment, request = await service.record_payment(
            user_principal, REQUEST_ID, 1000, PaymentMethod.BKASH, transaction_id="TRX-1"
        )

        assert payment.amount == 1000.0
        assert payment.commission_rate == 0.10
        assert payment.commission_amount == 100.0
        assert payment.net_to_mechanic == 900.0
        assert payment.transaction_id == "TRX-1"
        assert payment.payment_id.startswith("PAY-")
        assert request.status == RequestStatus.COMPLETED
        assert request.payment_status == PaymentStatus.PAYMENT_COMPLETED

        service._mechanics.increment_completed_jobs.assert_awaited_once()
        assert service._mechanics.increment_completed_jobs.call_args.args[0] == MECHANIC_ID
        lifecycle.after_payment_completion.assert_awaited_once_with(request, False)

    @pytest.mark.asyncio
    async def test_already_completed_request_not_counted_twice(
        self,
        service: PaymentService,
        lifecycle: MagicMock,
        user_principal: Principal,
    ) -> None:
        completed = make_assigned_request(RequestStatus.COMPLETED)
        service._requests.get_by_id = AsyncMock(return_value=completed)
        service._requests.lock_for_update = AsyncMock(return_value=completed)

        _, request = await service.record_payment(user_principal, REQUEST_ID, 500, PaymentMethod.CASH)

        service._mechanics.increment_completed_jobs.assert_not_called()
        lifecycle.after_payment_completion.assert_awaited_once_with(request, True)

    @pytest.mark.asyncio
    async def test_custom_commission(self, service: PaymentService, user_principal: Principal) -> None:
        payment, _ = await service.record_payment(
            user_principal, REQUEST_ID, 999.99, PaymentMethod.NAGAD, commission_rate=0.15
        )

        assert payment.commission_amount == 150.0
        assert payment.net_to_mechanic == 849.99
        assert payment.transaction_id.startswith("NAGAD-")

    @pytest.mark.asyncio
    async def test_notifications(
        self,
        service: PaymentService,
        mock_notifier: MagicMock,
        user_principal: Principal,
    ) -> None:
        await service.record_payment(user_principal, REQUEST_ID, 1000, PaymentMethod.CARD)

        rooms, event, _ = mock_notifier.emit_many.call_args.args
        assert rooms == [request_room(REQUEST_ID), user_room(USER_ID)]
        assert event == "payment:completed"

        emitted = {c.args[0]: c.args[2] for c in mock_notifier.emit.call_args_list}
        assert emitted[user_room(MECHANIC_USER_ID)]["net"] == 900.0
        assert emitted[ROOM_ADMINS]["commission"] == 100.0
        assert mock_notifier.publish.call_args.args[0] == EventTypes.PAYMENT_COMPLETED

    @pytest.mark.asyncio
    async def test_admin_can_record(self, service: PaymentService, admin_principal: Principal) -> None:
        payment, _ = await service.record_payment(admin_principal, REQUEST_ID, 300, PaymentMethod.CASH)
        assert payment.user_id == USER_ID

    @pytest.mark.asyncio
    async def test_not_found(self, service: PaymentService, user_principal: Principal) -> None:
        service._requests.get_by_id = AsyncMock(return_value=None)
        with pytest.raises(NotFoundError):
            await service.record_payment(user_principal, REQUEST_ID, 100, PaymentMethod.CASH)

    @pytest.mark.asyncio
    async def test_stranger_forbidden(self, service: PaymentService) -> None:
        stranger = Principal(id="99999999-9999-9999-9999-999999999999", role=UserRole.USER)
        with pytest.raises(ForbiddenError):
            await service.record_payment(stranger, REQUEST_ID, 100, PaymentMethod.CASH)

    @pytest.mark.asyncio
    async def test_already_paid(self, service: PaymentService, user_principal: Principal) -> None:
        service._requests.get_by_id = AsyncMock(
            return_value=make_assigned_request(
                RequestStatus.COMPLETED, payment_status=PaymentStatus.PAYMENT_COMPLETED
            )
        )
        with pytest.raises(ConflictError, match="already completed"):
            await service.record_payment(user_principal, REQUEST_ID, 100, PaymentMethod.CASH)
        service._repo.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_paid_concurrently(self, service: PaymentService, user_principal: Principal) -> None:
        """Повторная проверка под блокировкой строки отсекает параллельную оплату."""
        service._requests.lock_for_update = AsyncMock(
            return_value=make_assigned_request(payment_status=PaymentStatus.PAYMENT_COMPLETED)
        )
        with pytest.raises(ConflictError):
            await service.record_payment(user_principal, REQUEST_ID, 100, PaymentMethod.CASH)
        service._repo.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_while_paying(self, service: PaymentService, user_principal: Principal) -> None:
        """Заявка, отменённая между чтением и блокировкой, не оплачивается."""
        service._requests.get_by_id = AsyncMock(return_value=make_assigned_request(RequestStatus.ACCEPTED))
        service._requests.lock_for_update = AsyncMock(return_value=make_assigned_request(RequestStatus.CANCELLED))

        with pytest.raises(ConflictError, match="cancelled"):
            await service.record_payment(user_principal, REQUEST_ID, 100, PaymentMethod.CASH)

        service._repo.insert.assert_not_called()
        service._requests.mark_paid.assert_not_called()
        service._mechanics.increment_completed_jobs.assert_not_called()

    @pytest.mark.asyncio
    async def test_mark_paid_guard_lost(
        self,
        service: PaymentService,
        lifecycle: MagicMock,
        user_principal: Principal,
    ) -> None:
        """Условный UPDATE не нашёл оплачиваемую заявку: платёж откатывается."""
        service._requests.mark_paid = AsyncMock(return_value=None)

        with pytest.raises(ConflictError):
            await service.record_payment(user_principal, REQUEST_ID, 100, PaymentMethod.CASH)

        service._mechanics.increment_completed_jobs.assert_not_called()
        lifecycle.after_payment_completion.assert_not_called()

    @pytest.mark.asyncio
    async def test_unique_violation_is_conflict(self, service: PaymentService, user_principal: Principal) -> None:
        service._repo.insert = AsyncMock(side_effect=UniqueViolationError("duplicate key value"))
        with pytest.raises(ConflictError):
            await service.record_payment(user_principal, REQUEST_ID, 100, PaymentMethod.CASH)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [RequestStatus.PENDING, RequestStatus.CANCELLED, RequestStatus.REJECTED, RequestStatus.FAILED],
    )
    async def test_unpayable_status(
        self,
        service: PaymentService,
        user_principal: Principal,
        status: RequestStatus,
    ) -> None:
        service._requests.get_by_id = AsyncMock(return_value=make_request(status=status))
        with pytest.raises(ConflictError):
            await service.record_payment(user_principal, REQUEST_ID, 100, PaymentMethod.CASH)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -10, float("nan"), float("inf")])
    async def test_invalid_amount(self, service: PaymentService, user_principal: Principal, amount: float) -> None:
        with pytest.raises(ValidationFailedError):
            await service.record_payment(user_principal, REQUEST_ID, amount, PaymentMethod.CASH)

    @pytest.mark.asyncio
    async def test_invalid_commission(self, service: PaymentService, user_principal: Principal) -> None:
        with pytest.raises(ValidationFailedError):
            await service.record_payment(user_principal, REQUEST_ID, 100, PaymentMethod.CASH, commission_rate=1.5)


class TestRecordPaymentDTO:
    """Тесты тела POST /payment."""

    def test_method_case_insensitive(self) -> None:
        dto = RecordPaymentDTO.model_validate({"requestId": REQUEST_ID, "amount": 100, "method": " bKash "})
        assert dto.method == PaymentMethod.BKASH

    def test_unknown_method(self) -> None:
        from pydantic import ValidationError

        with pytest.raises(ValidationError):
            RecordPaymentDTO.model_validate({"requestId": REQUEST_ID, "amount": 100, "method": "paypal"})


class TestReading:
    """Тесты чтения платежей."""

    @pytest.mark.asyncio
    async def test_get_payment_owner(self, service: PaymentService, user_principal: Principal) -> None:
        service._repo.get_by_payment_id = AsyncMock(return_value=_payment())
        assert (await service.get_payment(user_principal, "PAY-1")).amount == 1000.0

    @pytest.mark.asyncio
    async def test_get_payment_stranger(self, service: PaymentService, mechanic_principal: Principal) -> None:
        service._repo.get_by_payment_id = AsyncMock(return_value=_payment())
        with pytest.raises(ForbiddenError):
            await service.get_payment(mechanic_principal, "PAY-1")

    @pytest.mark.asyncio
    async def test_verify_transaction_missing(self, service: PaymentService, user_principal: Principal) -> None:
        service._repo.get_by_transaction = AsyncMock(return_value=None)
        with pytest.raises(NotFoundError):
            await service.verify_transaction(user_principal, "TRX-404")

    @pytest.mark.asyncio
    async def test_history(self, service: PaymentService, user_principal: Principal) -> None:
        service._repo.list_for_user = AsyncMock(return_value=([_payment()], 1))

        page = await service.history(user_principal, PaginationParams(page=1, limit=10))

        assert page.total == 1
        service._repo.list_for_user.assert_awaited_once_with(USER_ID, 10, 0)

    @pytest.mark.asyncio
    async def test_invoice_lines_from_services(self, service: PaymentService, user_principal: Principal) -> None:
        service._repo.get_by_payment_id = AsyncMock(return_value=_payment())
        service._requests.get_by_id = AsyncMock(return_value=make_assigned_request(
            RequestStatus.COMPLETED,
            selected_services=[
                PricedService(key="tire_change", label="Tire change", unit_price=750),
                PricedService(key="towing", unit_price=0),
            ],
        ))
        service._users.get_by_id = AsyncMock(return_value=User(id=USER_ID, name="Rahim"))
        service._mechanics.get_by_id = AsyncMock(return_value=make_mechanic())

        invoice = await service.invoice(user_principal, "PAY-1")

        assert [(line.label, line.amount) for line in invoice.lines] == [("Tire change", 750)]
        assert invoice.customer_name == "Rahim"
        assert invoice.mechanic_name == "Karim"
        assert invoice.currency == "BDT"
        assert invoice.total == 1000.0

    @pytest.mark.asyncio
    async def test_invoice_single_line_fallback(self, service: PaymentService, user_principal: Principal) -> None:
        service._repo.get_by_payment_id = AsyncMock(return_value=_payment())
        service._requests.get_by_id = AsyncMock(return_value=make_assigned_request(RequestStatus.COMPLETED))
        service._users.get_by_id = AsyncMock(return_value=None)
        service._mechanics.get_by_id = AsyncMock(return_value=None)

        invoice = await service.invoice(user_principal, "PAY-1")

        assert [(line.label, line.amount) for line in invoice.lines] == [("flat_tire", 1000.0)]
        assert invoice.customer_name == ""
