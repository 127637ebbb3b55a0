# src/core/mechanics/__init__.py
"""
Домен механиков: профили и их хранение.
MechanicService импортируется из src.core.mechanics.service.
"""

from src.core.mechanics.models import Mechanic, MechanicReview
from src.core.mechanics.repository import MechanicRepository

__all__ = [
    "Mechanic",
    "MechanicReview",
    "MechanicRepository",
]
