# src/core/chat/__init__.py
"""
Чаты заявок: модели, хранение, отправка сообщений.
"""

from src.core.chat.models import Attachment, Chat, ChatMessage, SendMessageDTO
from src.core.chat.repository import ChatRepository
from src.core.chat.service import ChatService

__all__ = [
    "Attachment",
    "Chat",
    "ChatMessage",
    "SendMessageDTO",
    "ChatRepository",
    "ChatService",
]
