# src/core/notifications/__init__.py
"""
Уведомления: fan-out событий в realtime-комнаты и шину событий.
"""

from src.core.notifications.service import NotificationService, RealtimeEmitter, utc_now_iso

__all__ = [
    "NotificationService",
    "RealtimeEmitter",
    "utc_now_iso",
]
