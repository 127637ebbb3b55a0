# src/config/__init__.py
"""
Настройки приложения: config/config.json, переопределения из окружения и .env.
"""

from src.config.loader import Settings, get_project_root, get_settings, settings

__all__ = ["Settings", "get_project_root", "get_settings", "settings"]
