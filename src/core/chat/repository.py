# src/core/chat/repository.py
"""
Репозиторий чатов и сообщений.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from asyncpg import Record

from src.common.constants import MessageStatus, UserRole
from src.common.ids import is_uuid
from src.core.chat.models import Attachment, Chat, ChatMessage, ChatParticipant
from src.infra.database import DatabaseManager


_CHAT_COLUMNS = "c.id, c.request_id, c.is_closed, c.closed_at, c.created_at, c.updated_at"
_MESSAGE_COLUMNS = "id, chat_id, sender_id, text, attachments, status, created_at"


class ChatRepository:
    """Репозиторий чатов."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # =========================================================================
    # ЧАТЫ
    # =========================================================================

    async def create_for_request(
        self,
        request_id: str,
        participants: list[tuple[str, UserRole]],
    ) -> Chat:
        """
        Создаёт чат заявки, если его ещё нет, и добавляет участников.
        Повторный вызов возвращает существующий чат.
        """
        async with self._db.transaction() as conn:
            chat_id = await conn.fetchval(
                """
                INSERT INTO chats (request_id) VALUES ($1::uuid)
                ON CONFLICT (request_id) DO UPDATE SET updated_at = chats.updated_at
                RETURNING id
                """,
                request_id,
            )
            for principal_id, role in participants:
                await conn.execute(
                    """
                    INSERT INTO chat_participants (chat_id, principal_id, role)
                    VALUES ($1, $2::uuid, $3)
                    ON CONFLICT (chat_id, principal_id) DO NOTHING
                    """,
                    chat_id,
                    principal_id,
                    role.value,
                )
        chat = await self.get_by_id(str(chat_id))
        if chat is None:
            raise RuntimeError(f"Chat for request {request_id} vanished after insert")
        return chat

    async def get_by_id(self, chat_id: str) -> Optional[Chat]:
        if not is_uuid(chat_id):
            return None
        row = await self._db.fetchrow(f"SELECT {_CHAT_COLUMNS} FROM chats c WHERE c.id = $1::uuid", chat_id)
        if row is None:
            return None
        return await self._with_participants(row)

    async def get_by_request(self, request_id: str) -> Optional[Chat]:
        if not is_uuid(request_id):
            return None
        row = await self._db.fetchrow(
            f"SELECT {_CHAT_COLUMNS} FROM chats c WHERE c.request_id = $1::uuid",
            request_id,
        )
        if row is None:
            return None
        return await self._with_participants(row)

    async def list_for_principal(self, principal_id: str) -> list[Chat]:
        """Чаты участника с последним сообщением и числом непрочитанных."""
        rows = await self._db.fetch(
            f"""
            SELECT {_CHAT_COLUMNS},
                   (SELECT count(*) FROM chat_messages cm
                    WHERE cm.chat_id = c.id AND cm.sender_id <> $1::uuid
                      AND cm.status <> 'read') AS unread_count
            FROM chats c
            JOIN chat_participants p ON p.chat_id = c.id
            WHERE p.principal_id = $1::uuid
            ORDER BY c.updated_at DESC
            """,
            principal_id,
        )
        return [await self._with_participants(row, unread=row["unread_count"]) for row in rows]

    async def list_all(self, limit: int, offset: int) -> tuple[list[Chat], int]:
        rows = await self._db.fetch(
            f"SELECT {_CHAT_COLUMNS} FROM chats c ORDER BY c.updated_at DESC LIMIT $1 OFFSET $2",
            limit,
            offset,
        )
        total = await self._db.fetchval("SELECT count(*) FROM chats")
        return [await self._with_participants(row) for row in rows], int(total or 0)

    async def close(self, chat_id: str) -> Optional[Chat]:
        """Закрывает чат. None если уже закрыт."""
        row = await self._db.fetchrow(
            """
            UPDATE chats c SET is_closed = TRUE, closed_at = now(), updated_at = now()
            WHERE c.id = $1::uuid AND NOT c.is_closed
            RETURNING c.id, c.request_id, c.is_closed, c.closed_at, c.created_at, c.updated_at
            """,
            chat_id,
        )
        return await self._with_participants(row) if row else None

    async def delete(self, chat_id: str) -> bool:
        status = await self._db.execute("DELETE FROM chats WHERE id = $1::uuid", chat_id)
        return status.endswith(" 1")

    # =========================================================================
    # СООБЩЕНИЯ
    # =========================================================================

    async def insert_message(
        self,
        chat_id: str,
        sender_id: str,
        text: str | None,
        attachments: list[Attachment],
    ) -> ChatMessage:
        async with self._db.transaction() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO chat_messages (chat_id, sender_id, text, attachments, status)
                VALUES ($1::uuid, $2::uuid, $3, $4, 'sent')
                RETURNING {_MESSAGE_COLUMNS}
                """,
                chat_id,
                sender_id,
                text,
                [attachment.model_dump(mode="json") for attachment in attachments],
            )
            await conn.execute("UPDATE chats SET updated_at = now() WHERE id = $1::uuid", chat_id)
        return self._row_to_message(row)

    async def set_message_status(self, message_id: str, status: MessageStatus) -> None:
        await self._db.execute(
            "UPDATE chat_messages SET status = $2 WHERE id = $1::uuid AND status <> 'read'",
            message_id,
            status.value,
        )

    async def mark_read(self, chat_id: str, reader_id: str) -> tuple[int, datetime]:
        """
        Отмечает прочитанными все чужие сообщения чата.

        Returns:
            (число обновлённых сообщений, время прочтения)
        """
        async with self._db.transaction() as conn:
            read_at = await conn.fetchval(
                """
                UPDATE chat_participants SET last_read_at = now()
                WHERE chat_id = $1::uuid AND principal_id = $2::uuid
                RETURNING last_read_at
                """,
                chat_id,
                reader_id,
            )
            if read_at is None:
                read_at = await conn.fetchval("SELECT now()")
            status = await conn.execute(
                """
                UPDATE chat_messages SET status = 'read'
                WHERE chat_id = $1::uuid AND sender_id <> $2::uuid AND status <> 'read'
                """,
                chat_id,
                reader_id,
            )
        return int(status.split()[-1]), read_at

    async def list_messages(
        self,
        chat_id: str,
        before: datetime | None,
        limit: int,
    ) -> list[ChatMessage]:
        """Последние limit сообщений до before, в хронологическом порядке."""
        rows = await self._db.fetch(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM chat_messages
            WHERE chat_id = $1::uuid AND ($2::timestamptz IS NULL OR created_at < $2::timestamptz)
            ORDER BY created_at DESC, seq DESC
            LIMIT $3
            """,
            chat_id,
            before,
            limit,
        )
        return [self._row_to_message(row) for row in reversed(rows)]

    # =========================================================================
    # МАППИНГ
    # =========================================================================

    async def _with_participants(self, row: Record, unread: int = 0) -> Chat:
        participants = await self._db.fetch(
            """
            SELECT principal_id, role, last_read_at FROM chat_participants
            WHERE chat_id = $1
            ORDER BY role DESC
            """,
            row["id"],
        )
        last = await self._db.fetchrow(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM chat_messages
            WHERE chat_id = $1
            ORDER BY created_at DESC, seq DESC
            LIMIT 1
            """,
            row["id"],
        )
        return Chat(
            id=str(row["id"]),
            request_id=str(row["request_id"]),
            participants=[
                ChatParticipant(
                    principal_id=str(p["principal_id"]),
                    role=UserRole(p["role"]),
                    last_read_at=p["last_read_at"],
                )
                for p in participants
            ],
            is_closed=row["is_closed"],
            closed_at=row["closed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_message=self._row_to_message(last) if last else None,
            unread_count=unread,
        )

    @staticmethod
    def _row_to_message(row: Record) -> ChatMessage:
        return ChatMessage(
            id=str(row["id"]),
            chat_id=str(row["chat_id"]),
            sender_id=str(row["sender_id"]),
            text=row["text"],
            attachments=[Attachment(**item) for item in row["attachments"] or []],
            status=MessageStatus(row["status"]),
            created_at=row["created_at"],
        )
