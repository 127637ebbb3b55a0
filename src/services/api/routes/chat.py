# src/services/api/routes/chat.py
"""
Чаты заявок: список, история сообщений, отправка, прочтение.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status

from src.core.chat.models import SendMessageDTO
from src.core.chat.service import ChatService
from src.core.users.models import Principal
from src.services.api.dependencies import (
    get_chat_service,
    get_current_principal,
    get_pagination,
    require_admin,
)
from src.shared.models.common import ApiResponse, PaginationParams


router = APIRouter(prefix="/chat", tags=["Chat"])


@router.get("")
async def my_chats(
    principal: Principal = Depends(get_current_principal),
    service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    chats = await service.list_mine(principal)
    return ApiResponse.ok("Chats retrieved", chats)


@router.get("/admin/all")
async def all_chats(
    pagination: PaginationParams = Depends(get_pagination),
    admin: Principal = Depends(require_admin),
    service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    page = await service.list_all(admin, pagination)
    return ApiResponse.ok("Chats retrieved", page)


@router.get("/request/{request_id}")
async def chat_for_request(
    request_id: str,
    principal: Principal = Depends(get_current_principal),
    service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    chat = await service.join(principal, request_id=request_id)
    return ApiResponse.ok("Chat retrieved", chat)


@router.get("/{chat_id}/messages")
async def chat_messages(
    chat_id: str,
    before: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    """Сообщения в порядке отправки; before/limit для подгрузки старых."""
    messages = await service.get_messages(principal, chat_id, before=before, limit=limit)
    return ApiResponse.ok("Messages retrieved", messages)


@router.post("/{chat_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: str,
    dto: SendMessageDTO,
    principal: Principal = Depends(get_current_principal),
    service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    message = await service.send_message(principal, chat_id, text=dto.text, attachments=dto.attachments)
    return ApiResponse.ok("Message sent", message)


@router.put("/{chat_id}/read")
async def mark_read(
    chat_id: str,
    principal: Principal = Depends(get_current_principal),
    service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    result = await service.mark_read(principal, chat_id)
    return ApiResponse.ok("Messages marked as read", result)
