# src/shared/__init__.py
"""
Общие модели HTTP и realtime слоёв: camelCase база, конверт ответа, пагинация.
"""

__all__: list[str] = []
