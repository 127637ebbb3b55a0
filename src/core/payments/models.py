# src/core/payments/models.py
"""
Модели платежей.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from pydantic import Field, field_validator

from src.common.constants import PaymentMethod, PaymentRecordStatus
from src.shared.models.common import CamelModel


def round2(value: float) -> float:
    """Округление денежной суммы до копеек."""
    return round(float(value), 2)


class Payment(CamelModel):
    """Запись платежа. После completed не меняется."""

    id: str
    payment_id: str = Field(..., description="Внешний ID PAY-<ms>-<XXXXXX>")
    request_id: str
    user_id: str
    mechanic_id: Optional[str] = None
    amount: float
    method: PaymentMethod
    transaction_id: str
    commission_rate: float
    commission_amount: float
    net_to_mechanic: float
    status: PaymentRecordStatus = PaymentRecordStatus.COMPLETED
    created_at: Optional[datetime] = None


class RecordPaymentDTO(CamelModel):
    """Тело POST /payment."""

    request_id: str = Field(..., min_length=1)
    amount: float
    method: PaymentMethod
    transaction_id: Optional[str] = Field(None, max_length=128)
    commission_rate: Optional[float] = Field(None, ge=0, le=1)

    @field_validator("amount")
    @classmethod
    def positive_finite(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("amount must be a positive finite number")
        return v

    @field_validator("method", mode="before")
    @classmethod
    def lower_method(cls, v: object) -> object:
        return v.strip().lower() if isinstance(v, str) else v


class PaymentCompletedDTO(CamelModel):
    """Тело устаревшего PUT /requests/{id}/payment-completed."""

    amount: float
    method: PaymentMethod = PaymentMethod.CASH
    transaction_id: Optional[str] = Field(None, max_length=128)

    @field_validator("amount")
    @classmethod
    def positive_finite(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("amount must be a positive finite number")
        return v


class InvoiceLine(CamelModel):
    label: str
    amount: float


class Invoice(CamelModel):
    """Данные счёта (рендеринг в PDF выполняется клиентом)."""

    payment_id: str
    request_id: str
    issued_at: Optional[datetime] = None
    currency: str
    customer_name: str = ""
    mechanic_name: str = ""
    vehicle_type: str = ""
    problem_type: str = ""
    lines: list[InvoiceLine] = Field(default_factory=list)
    total: float
    commission_amount: float
    net_to_mechanic: float
    method: PaymentMethod
    transaction_id: str
