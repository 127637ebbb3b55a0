# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class UserRole(str, Enum):
    """Роли пользователей."""
    USER = "user"
    MECHANIC = "mechanic"
    ADMIN = "admin"


class RequestStatus(str, Enum):
    """Статусы заявки на помощь."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    ON_WAY = "on_way"
    ARRIVED = "arrived"
    WORKING = "working"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    FAILED = "failed"

    @classmethod
    def normalize(cls, value: "str | RequestStatus") -> "RequestStatus":
        """
        Приводит статус к каноническому имени.

        Legacy-синонимы: in_progress -> on_way, active -> accepted.

        Raises:
            ValueError: Неизвестный статус
        """
        if isinstance(value, RequestStatus):
            return value
        raw = str(value).strip().lower()
        return cls(STATUS_ALIASES.get(raw, raw))


STATUS_ALIASES: dict[str, str] = {
    "in_progress": RequestStatus.ON_WAY.value,
    "active": RequestStatus.ACCEPTED.value,
}

# Статусы, в которых заявка занимает механика
ACTIVE_REQUEST_STATUSES: tuple[RequestStatus, ...] = (
    RequestStatus.ACCEPTED,
    RequestStatus.ON_WAY,
    RequestStatus.ARRIVED,
    RequestStatus.WORKING,
)

TERMINAL_REQUEST_STATUSES: tuple[RequestStatus, ...] = (
    RequestStatus.COMPLETED,
    RequestStatus.CANCELLED,
    RequestStatus.REJECTED,
    RequestStatus.FAILED,
)

# Оплата невозможна, пока механик не назначен, и после отмены
UNPAYABLE_REQUEST_STATUSES: tuple[RequestStatus, ...] = (
    RequestStatus.PENDING,
    RequestStatus.CANCELLED,
    RequestStatus.REJECTED,
    RequestStatus.FAILED,
)


class Priority(str, Enum):
    """Приоритет заявки."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class VehicleType(str, Enum):
    """Типы транспорта."""
    BIKE = "bike"
    CAR = "car"
    TRUCK = "truck"
    BUS = "bus"
    CNG = "cng"
    RICKSHAW = "rickshaw"


class ServiceSkill(str, Enum):
    """Услуги, которые может оказывать механик."""
    ENGINE_REPAIR = "engine_repair"
    TIRE_CHANGE = "tire_change"
    BATTERY_JUMP = "battery_jump"
    FUEL_DELIVERY = "fuel_delivery"
    LOCKOUT_SERVICE = "lockout_service"
    TOWING = "towing"
    BRAKE_REPAIR = "brake_repair"
    ELECTRICAL_REPAIR = "electrical_repair"
    OIL_CHANGE = "oil_change"
    AC_REPAIR = "ac_repair"
    GENERAL_MAINTENANCE = "general_maintenance"


class VerificationStatus(str, Enum):
    """Статус верификации механика."""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    """Статус оплаты заявки."""
    NONE = "none"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"


class PaymentRecordStatus(str, Enum):
    """Статус записи платежа."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    """Способы оплаты."""
    CASH = "cash"
    BKASH = "bkash"
    NAGAD = "nagad"
    ROCKET = "rocket"
    CARD = "card"


class MessageStatus(str, Enum):
    """Статус сообщения чата."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class AttachmentType(str, Enum):
    """Типы вложений чата."""
    IMAGE = "image"
    FILE = "file"
    LOCATION = "location"


class ChangeRequestStatus(str, Enum):
    """Статус заявки на изменение профиля механика."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Множители стоимости по типу транспорта
VEHICLE_MULTIPLIERS: dict[str, float] = {
    VehicleType.TRUCK.value: 1.5,
    VehicleType.BUS.value: 1.8,
}

# Поля профиля, изменение которых всегда требует модерации
SENSITIVE_PROFILE_FIELDS: tuple[str, ...] = ("garage", "documents")

# Поля профиля, которые механик не может менять сам
PROTECTED_PROFILE_FIELDS: tuple[str, ...] = (
    "id",
    "user_id",
    "rating",
    "total_ratings",
    "completed_jobs",
    "verification_status",
)

# Имена комнат realtime-хаба
ROOM_MECHANICS = "mechanics"
ROOM_ADMINS = "admins"


def user_room(principal_id: str) -> str:
    """Персональная комната пользователя."""
    return f"user_{principal_id}"


def request_room(request_id: str) -> str:
    """Комната заявки."""
    return f"request_{request_id}"


def chat_room(chat_id: str) -> str:
    """Комната чата."""
    return f"chat_{chat_id}"
