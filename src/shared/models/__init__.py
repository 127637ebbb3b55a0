# src/shared/models/__init__.py
"""
Общие Pydantic-модели: базовая camelCase модель, конверт ответа, пагинация.
"""

from src.shared.models.common import (
    ApiResponse,
    CamelModel,
    GeoPoint,
    HealthStatus,
    Page,
    PaginationParams,
    PriceBand,
)

__all__ = [
    "ApiResponse",
    "CamelModel",
    "GeoPoint",
    "HealthStatus",
    "Page",
    "PaginationParams",
    "PriceBand",
]
