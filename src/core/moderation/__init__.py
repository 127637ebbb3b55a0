# src/core/moderation/__init__.py
"""
Модерация правок профиля механика.
"""

from src.core.moderation.models import ChangeLogEntry, ChangeRequest, ModerationDecisionDTO
from src.core.moderation.repository import ChangeLogRepository, ChangeRequestRepository
from src.core.moderation.service import ModerationService

__all__ = [
    "ChangeLogEntry",
    "ChangeRequest",
    "ChangeLogRepository",
    "ChangeRequestRepository",
    "ModerationDecisionDTO",
    "ModerationService",
]
