# src/core/chat/service.py
"""
Сервис чатов заявок.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from src.common.constants import (
    MessageStatus,
    TypeMsg,
    UserRole,
    chat_room,
    request_room,
    user_room,
)
from src.common.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailedError
from src.common.logger import log_info
from src.core.chat.models import Attachment, Chat, ChatMessage
from src.core.chat.repository import ChatRepository
from src.core.notifications.service import NotificationService, utc_now_iso
from src.core.requests.models import ServiceRequest
from src.core.users.models import Principal
from src.infra.database import DatabaseManager
from src.shared.models.common import Page, PaginationParams


class ChatService:
    """
    Сервис чатов.

    Чат создаётся при принятии заявки (участники - клиент и механик)
    и закрывается или удаляется при её завершении.
    """

    def __init__(self, db: DatabaseManager, notifier: NotificationService) -> None:
        from src.config import settings

        self._repo = ChatRepository(db)
        self._notifier = notifier
        self._max_text_length = settings.chat.MAX_TEXT_LENGTH
        self._max_attachments = settings.chat.MAX_ATTACHMENTS
        self._max_attachment_names = settings.chat.MAX_ATTACHMENT_NAMES_LENGTH
        self._delete_on_complete = settings.chat.DELETE_ON_COMPLETE
        self._page_limit = settings.chat.PAGE_LIMIT

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================

    async def ensure_for_request(self, request: ServiceRequest) -> Chat:
        """
        Возвращает чат заявки, создавая его при необходимости.

        Args:
            request: Принятая заявка с назначенным механиком
        """
        participants: list[tuple[str, UserRole]] = [(request.user_id, UserRole.USER)]
        if request.mechanic_user_id:
            participants.append((request.mechanic_user_id, UserRole.MECHANIC))

        chat = await self._repo.create_for_request(request.id, participants)
        await log_info(f"Чат {chat.id} готов для заявки {request.id}", type_msg=TypeMsg.DEBUG)
        return chat

    async def finalize_for_request(self, request_id: str) -> Optional[str]:
        """
        Закрывает или удаляет чат завершённой заявки (по chat.DELETE_ON_COMPLETE).

        Returns:
            "closed", "deleted" или None, если чата нет
        """
        chat = await self._repo.get_by_request(request_id)
        if chat is None:
            return None

        rooms = [chat_room(chat.id), request_room(request_id)]
        if self._delete_on_complete:
            await self._repo.delete(chat.id)
            await self._notifier.emit_many(
                rooms,
                "chat_deleted",
                {"chatId": chat.id, "requestId": request_id, "timestamp": utc_now_iso()},
            )
            await log_info(f"Чат {chat.id} удалён после завершения заявки {request_id}", type_msg=TypeMsg.INFO)
            return "deleted"

        closed = await self._repo.close(chat.id)
        if closed is not None:
            await self._notifier.emit_many(
                rooms,
                "chat_closed",
                {
                    "chatId": chat.id,
                    "requestId": request_id,
                    "closedAt": closed.closed_at.isoformat() if closed.closed_at else utc_now_iso(),
                },
            )
            await log_info(f"Чат {chat.id} закрыт после завершения заявки {request_id}", type_msg=TypeMsg.INFO)
        return "closed"

    # =========================================================================
    # ДОСТУП
    # =========================================================================

    async def join(
        self,
        principal: Principal,
        chat_id: str | None = None,
        request_id: str | None = None,
    ) -> Chat:
        """
        Открывает чат по ID чата или заявки.

        Raises:
            ValidationFailedError: Не передан ни один идентификатор
            NotFoundError: Чат не найден
            ForbiddenError: Не участник и не администратор
        """
        if chat_id:
            chat = await self._repo.get_by_id(chat_id)
        elif request_id:
            chat = await self._repo.get_by_request(request_id)
        else:
            raise ValidationFailedError("chatId or requestId is required")

        if chat is None:
            raise NotFoundError("Chat not found")
        if not principal.is_admin and not chat.is_participant(principal.id):
            raise ForbiddenError("You are not a participant of this chat")
        return chat

    # =========================================================================
    # СООБЩЕНИЯ
    # =========================================================================

    def _validate_content(self, text: str | None, attachments: list[Attachment]) -> str | None:
        text = text.strip() if isinstance(text, str) else None
        if not text and not attachments:
            raise ValidationFailedError("Message must contain text or attachments")
        if text and len(text) > self._max_text_length:
            raise ValidationFailedError(f"Message text exceeds {self._max_text_length} characters")
        if len(attachments) > self._max_attachments:
            raise ValidationFailedError(f"At most {self._max_attachments} attachments are allowed")
        if sum(len(item.name or "") for item in attachments) > self._max_attachment_names:
            raise ValidationFailedError("Attachments metadata too large")
        return text or None

    async def send_message(
        self,
        principal: Principal,
        chat_id: str | None = None,
        text: str | None = None,
        attachments: list[Attachment] | None = None,
        request_id: str | None = None,
    ) -> ChatMessage:
        """
        Добавляет сообщение и рассылает его в комнату чата.
        Чат задаётся chat_id или, если его нет, ID заявки.

        Сообщение сохраняется со статусом sent, после рассылки
        переводится в delivered.

        Raises:
            ValidationFailedError: Пустое или слишком длинное сообщение
            ConflictError: Чат закрыт
        """
        attachments = attachments or []
        clean_text = self._validate_content(text, attachments)
        chat = await self.join(principal, chat_id=chat_id, request_id=request_id)
        if chat.is_closed:
            raise ConflictError("Chat is closed")

        message = await self._repo.insert_message(chat.id, principal.id, clean_text, attachments)
        await self._notifier.emit(
            chat_room(chat.id),
            "message_received",
            {"chatId": chat.id, "requestId": chat.request_id, "message": message.to_wire()},
        )

        await self._repo.set_message_status(message.id, MessageStatus.DELIVERED)
        message = message.model_copy(update={"status": MessageStatus.DELIVERED})

        preview = (clean_text or "")[:100]
        for recipient in chat.other_participants(principal.id):
            await self._notifier.emit(
                user_room(recipient),
                "new_message_notification",
                {
                    "chatId": chat.id,
                    "requestId": chat.request_id,
                    "senderId": principal.id,
                    "senderName": principal.name,
                    "preview": preview,
                    "timestamp": utc_now_iso(),
                },
            )
        return message

    async def mark_read(self, principal: Principal, chat_id: str) -> dict[str, Any]:
        """Отмечает чужие сообщения прочитанными и сообщает об этом в комнату."""
        chat = await self.join(principal, chat_id=chat_id)
        updated, read_at = await self._repo.mark_read(chat.id, principal.id)
        payload = {
            "chatId": chat.id,
            "userId": principal.id,
            "readAt": read_at.isoformat(),
            "updated": updated,
        }
        await self._notifier.emit(chat_room(chat.id), "mark_read", payload)
        return payload

    async def get_messages(
        self,
        principal: Principal,
        chat_id: str,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[ChatMessage]:
        chat = await self.join(principal, chat_id=chat_id)
        limit = max(1, min(limit or self._page_limit, 200))
        return await self._repo.list_messages(chat.id, before, limit)

    async def list_mine(self, principal: Principal) -> list[Chat]:
        return await self._repo.list_for_principal(principal.id)

    async def list_all(self, principal: Principal, pagination: PaginationParams) -> Page[Chat]:
        if not principal.is_admin:
            raise ForbiddenError("Admin role required")
        chats, total = await self._repo.list_all(pagination.limit, pagination.offset)
        return Page[Chat].create(chats, total, pagination)
