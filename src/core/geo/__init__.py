# src/core/geo/__init__.py
"""
Гео-функции и поиск механиков поблизости.
GeoIndex импортируется из src.core.geo.service.
"""

from src.core.geo.distance import EARTH_RADIUS_KM, has_point, haversine_km

__all__ = [
    "EARTH_RADIUS_KM",
    "has_point",
    "haversine_km",
]
