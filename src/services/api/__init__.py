# src/services/api/__init__.py
"""
HTTP API: FastAPI приложение, зависимости, middleware и маршруты.
Приложение импортируется из src.services.api.app.
"""
