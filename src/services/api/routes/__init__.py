# src/services/api/routes/__init__.py
"""
HTTP-маршруты API. Каждый модуль экспортирует router.
"""
