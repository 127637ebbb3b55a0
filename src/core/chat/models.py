# src/core/chat/models.py
"""
Модели чата заявки.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from src.common.constants import AttachmentType, MessageStatus, UserRole
from src.shared.models.common import CamelModel


class Attachment(CamelModel):
    """Вложение: ссылка на уже загруженный файл или точка на карте."""

    url: str = ""
    name: Optional[str] = None
    type: AttachmentType = AttachmentType.FILE
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChatParticipant(CamelModel):
    principal_id: str
    role: UserRole
    last_read_at: Optional[datetime] = None


class ChatMessage(CamelModel):
    """Сообщение. Порядок - по (created_at, seq)."""

    id: str
    chat_id: str
    sender_id: str
    text: Optional[str] = None
    attachments: list[Attachment] = Field(default_factory=list)
    status: MessageStatus = MessageStatus.SENT
    created_at: Optional[datetime] = None


class Chat(CamelModel):
    """Чат, привязанный к заявке."""

    id: str
    request_id: str
    participants: list[ChatParticipant] = Field(default_factory=list)
    is_closed: bool = False
    closed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Заполняются в списках чатов
    last_message: Optional[ChatMessage] = None
    unread_count: int = 0

    def is_participant(self, principal_id: str) -> bool:
        return any(p.principal_id == principal_id for p in self.participants)

    def other_participants(self, principal_id: str) -> list[str]:
        return [p.principal_id for p in self.participants if p.principal_id != principal_id]


class SendMessageDTO(CamelModel):
    """Тело POST /chat/{id}/messages."""

    text: Optional[str] = None
    attachments: list[Attachment] = Field(default_factory=list)
