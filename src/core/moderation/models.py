# src/core/moderation/models.py
"""
Модели модерации правок профиля механика.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from src.common.constants import ChangeRequestStatus
from src.shared.models.common import CamelModel


class ChangeRequest(CamelModel):
    """Правка профиля, ожидающая решения администратора."""

    id: str
    mechanic_id: str
    requested_by: str
    status: ChangeRequestStatus = ChangeRequestStatus.PENDING
    fields_changed: dict[str, dict[str, Any]] = Field(default_factory=dict, description="{поле: {from, to}}")
    reasons: list[str] = Field(default_factory=list)
    reviewer_id: Optional[str] = None
    reviewer_notes: Optional[str] = None
    decided_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def target_values(self) -> dict[str, Any]:
        """Значения `to` для применения к профилю."""
        return {field: diff.get("to") for field, diff in self.fields_changed.items()}


class ChangeLogEntry(CamelModel):
    """Запись журнала применённых правок."""

    id: str
    mechanic_id: str
    changed_by: str
    source: str  # self, moderation
    change_request_id: Optional[str] = None
    fields_changed: dict[str, dict[str, Any]] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class ModerationDecisionDTO(CamelModel):
    """Тело запроса approve/reject."""

    notes: Optional[str] = Field(None, max_length=1000)
