# src/services/realtime_ws/__init__.py
"""
Realtime-хаб: WebSocket-соединения, комнаты и рассылка событий.

Обеспечивает:
- Проверку токена и лимит попыток подключения
- Комнаты user_<id>, request_<id>, chat_<id>, mechanics, admins
- Позицию и ETA механика, события чата, доступность
- Межворкерную рассылку через Redis Pub/Sub (опционально)
"""

from src.services.realtime_ws.connection_manager import ConnectionInfo, ConnectionManager
from src.services.realtime_ws.hub import RealtimeHub
from src.services.realtime_ws.rate_limit import ConnectionRateLimiter, SlidingWindow

__all__ = [
    "ConnectionInfo",
    "ConnectionManager",
    "RealtimeHub",
    "ConnectionRateLimiter",
    "SlidingWindow",
]
