# src/core/users/__init__.py
"""
Домен пользователей: проверенная личность, учётные записи, проверка токенов.
"""

from src.core.users.models import Principal, User
from src.core.users.repository import UserRepository
from src.core.users.tokens import TokenVerifier, extract_bearer

__all__ = [
    "Principal",
    "User",
    "UserRepository",
    "TokenVerifier",
    "extract_bearer",
]
