# src/services/__init__.py
"""
Транспортный слой приложения.

Сервисы:
- api: HTTP API (FastAPI), middleware режима обслуживания и таймаута
- realtime_ws: WebSocket-хаб, комнаты, межворкерная рассылка через Redis
"""

__all__: list[str] = []
