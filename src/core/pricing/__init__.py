# src/core/pricing/__init__.py
"""
Ценообразование: оценка заявок, политика цен, проверка правок механика.
"""

from src.core.pricing.models import EditDecision, Estimate, PricedService, PricingPolicy
from src.core.pricing.repository import PricingPolicyRepository
from src.core.pricing.service import PricingEvaluator, vehicle_multiplier

__all__ = [
    "EditDecision",
    "Estimate",
    "PricedService",
    "PricingPolicy",
    "PricingPolicyRepository",
    "PricingEvaluator",
    "vehicle_multiplier",
]
