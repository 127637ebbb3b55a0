# src/common/ids.py
"""
Проверка идентификаторов, пришедших от клиента.
"""

from __future__ import annotations

import uuid
from typing import Any


def is_uuid(value: Any) -> bool:
    """Строка является UUID (первичные ключи всех таблиц)."""
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True
