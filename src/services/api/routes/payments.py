# src/services/api/routes/payments.py
"""
Платежи: запись, просмотр, счёт, проверка транзакции.

Endpoints:
- POST /payment - записать платёж по заявке
- GET /payment/history - платежи текущего пользователя
- GET /payment/verify/{transaction_id} - платёж по ID транзакции
- GET /payment/{payment_id} - платёж
- GET /payment/{payment_id}/invoice - данные счёта
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status

from src.core.payments.models import RecordPaymentDTO
from src.core.payments.service import PaymentService
from src.core.users.models import Principal
from src.services.api.dependencies import get_current_principal, get_pagination, get_payment_service
from src.shared.models.common import ApiResponse, PaginationParams


router = APIRouter(prefix="/payment", tags=["Payments"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_payment(
    dto: RecordPaymentDTO,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    """
    Записать платёж.

    Комиссия и сумма механику считаются с округлением до 2 знаков.
    Повторная оплата заявки отклоняется (409).
    """
    payment, request = await service.record_payment(
        principal,
        dto.request_id,
        dto.amount,
        dto.method,
        commission_rate=dto.commission_rate,
        transaction_id=dto.transaction_id,
    )
    return ApiResponse.ok("Payment recorded successfully", {"payment": payment, "request": request})


@router.get("/history")
async def payment_history(
    pagination: PaginationParams = Depends(get_pagination),
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    page = await service.history(principal, pagination)
    return ApiResponse.ok("Payment history retrieved", page)


@router.get("/verify/{transaction_id}")
async def verify_transaction(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    payment = await service.verify_transaction(principal, transaction_id)
    return ApiResponse.ok("Transaction verified", payment)


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    payment = await service.get_payment(principal, payment_id)
    return ApiResponse.ok("Payment retrieved", payment)


@router.get("/{payment_id}/invoice")
async def get_invoice(
    payment_id: str,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    invoice = await service.invoice(principal, payment_id)
    return ApiResponse.ok("Invoice retrieved", invoice)
