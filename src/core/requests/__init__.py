# src/core/requests/__init__.py
"""
Домен заявок: модели, репозиторий, машина состояний.
LifecycleService импортируется из src.core.requests.service.
"""

from src.core.requests.models import ServiceRequest, CreateRequestDTO
from src.core.requests.repository import RequestRepository
from src.core.requests.state_machine import RequestStateMachine, ALLOWED_TRANSITIONS

__all__ = [
    "ServiceRequest",
    "CreateRequestDTO",
    "RequestRepository",
    "RequestStateMachine",
    "ALLOWED_TRANSITIONS",
]
