# src/core/geo/distance.py
"""
Расстояния на сфере Земли.
"""

import math

EARTH_RADIUS_KM = 6371.0


def has_point(lon: float | None, lat: float | None) -> bool:
    """Координаты заданы, конечны и не равны заглушке (0, 0)."""
    if lon is None or lat is None:
        return False
    try:
        lon_f, lat_f = float(lon), float(lat)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lon_f) and math.isfinite(lat_f)):
        return False
    return not (lon_f == 0 and lat_f == 0)


def haversine_km(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """
    Расстояние между двумя точками (в км) по формуле Haversine.
    Аргументы в порядке (долгота, широта).
    """
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def haversine_sql(lat_col: str, lon_col: str, lat_param: str, lon_param: str) -> str:
    """SQL-выражение расстояния Haversine в км (для фильтра по радиусу в запросе)."""
    return (
        f"({EARTH_RADIUS_KM} * 2 * asin(sqrt("
        f"power(sin(radians({lat_col} - {lat_param}) / 2), 2) + "
        f"cos(radians({lat_param})) * cos(radians({lat_col})) * "
        f"power(sin(radians({lon_col} - {lon_param}) / 2), 2))))"
    )
