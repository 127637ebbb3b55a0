# src/core/users/tokens.py
"""
Проверка bearer-токенов (HS256, PyJWT).
Токены выпускает внешний сервис авторизации, здесь только проверка.
"""

from __future__ import annotations

import time
from typing import Any, Optional

import jwt

from src.common.constants import TypeMsg
from src.common.errors import UnauthenticatedError
from src.common.ids import is_uuid
from src.common.logger import log_info
from src.core.users.models import Principal
from src.core.users.repository import UserRepository
from src.infra.database import DatabaseManager


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Токен из заголовка `Authorization: Bearer <token>`."""
    if not header or not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenVerifier:
    """
    Проверяет подпись и срок токена и загружает принципала из БД.

    Токен, до истечения которого осталось меньше grace_seconds,
    отклоняется: клиент должен переавторизоваться заранее.
    """

    def __init__(
        self,
        db: DatabaseManager,
        secret: str | None = None,
        algorithm: str | None = None,
        grace_seconds: int | None = None,
    ) -> None:
        from src.config import settings

        self._users = UserRepository(db)
        self._secret = secret if secret is not None else settings.auth.JWT_SECRET
        self._algorithm = algorithm or settings.auth.JWT_ALGORITHM
        self._grace = settings.auth.TOKEN_EXPIRY_GRACE_SECONDS if grace_seconds is None else grace_seconds

    def decode(self, token: str) -> dict[str, Any]:
        """
        Проверяет подпись и срок действия.

        Raises:
            UnauthenticatedError: Токен недействителен, истёк или скоро истечёт
        """
        if not self._secret:
            raise UnauthenticatedError("Token verification is not configured")
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as e:
            raise UnauthenticatedError("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise UnauthenticatedError("Invalid token") from e

        exp = claims.get("exp")
        if exp is not None and float(exp) - time.time() < self._grace:
            raise UnauthenticatedError("Token expiring soon")
        return claims

    async def verify(self, token: str | None) -> Principal:
        """
        Принципал по токену.

        Raises:
            UnauthenticatedError: Нет токена, он недействителен или пользователь неактивен
        """
        if not token:
            raise UnauthenticatedError("No token provided")

        claims = self.decode(token)
        user_id = claims.get("userId") or claims.get("user_id") or claims.get("sub")
        if not user_id or not is_uuid(str(user_id)):
            raise UnauthenticatedError("Invalid token")

        user = await self._users.get_by_id(str(user_id))
        if user is None or not user.is_active:
            await log_info(f"Отклонён токен неактивного или неизвестного пользователя {user_id}", type_msg=TypeMsg.WARNING)
            raise UnauthenticatedError("Invalid user")

        return user.to_principal()
