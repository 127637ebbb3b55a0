from src.core.payments.models import Invoice, Payment, RecordPaymentDTO, round2
from src.core.payments.repository import PaymentRepository
from src.core.payments.service import PaymentService, generate_payment_id

__all__ = [
    "Invoice",
    "Payment",
    "PaymentRepository",
    "PaymentService",
    "RecordPaymentDTO",
    "generate_payment_id",
    "round2",
]
