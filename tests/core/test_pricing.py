# tests/core/test_pricing.py
"""
Тесты ценообразования: оценка заявки, правки профиля, политика цен.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import ADMIN_ID, make_mechanic
from src.core.pricing.models import PricedService, PricingPolicy, PricingPolicyUpdateDTO
from src.core.pricing.policy import POLICY_CACHE_KEY, PricingPolicyService
from src.core.pricing.service import PricingEvaluator, vehicle_multiplier
from src.infra.event_bus import EventTypes
from src.shared.models.common import PriceBand


@pytest.fixture
def evaluator() -> PricingEvaluator:
    return PricingEvaluator(default_base_rate=500.0)


@pytest.fixture
def policy() -> PricingPolicy:
    return PricingPolicy(max_price_delta_fraction=0.30, default_min=100.0, default_max=5000.0)


class TestVehicleMultiplier:
    """Тесты множителя по типу транспорта."""

    @pytest.mark.parametrize(
        "vehicle_type, expected",
        [("truck", 1.5), ("bus", 1.8), ("BUS", 1.8), ("car", 1.0), ("bike", 1.0), (None, 1.0)],
    )
    def test_multiplier(self, vehicle_type: str | None, expected: float) -> None:
        assert vehicle_multiplier(vehicle_type) == expected


class TestEstimate:
    """Тесты для PricingEvaluator.estimate."""

    def test_truck_service_priced_from_band_max(self, evaluator: PricingEvaluator) -> None:
        """Цена услуги = round(множитель * max)."""
        estimate = evaluator.estimate(
            make_mechanic(), "truck", [PricedService(key="tire_change")]
        )

        assert estimate.vehicle_multiplier == 1.5
        assert estimate.priced_services[0].unit_price == 750
        assert estimate.priced_services[0].label == "Tire change"
        assert estimate.estimated_cost == 750
        assert estimate.estimated_cost_range == PriceBand(min=450, max=750)

    def test_band_without_max_uses_min(self, evaluator: PricingEvaluator) -> None:
        mechanic = make_mechanic(service_prices={"towing": PriceBand(min=800, max=0)})

        estimate = evaluator.estimate(mechanic, "car", [PricedService(key="towing")])

        assert estimate.estimated_cost == 800
        assert estimate.estimated_cost_range == PriceBand(min=800, max=800)

    def test_unpriced_service_falls_back_to_client_estimate(self, evaluator: PricingEvaluator) -> None:
        estimate = evaluator.estimate(
            make_mechanic(), "car", [PricedService(key="towing")], fallback_cost=1200
        )

        assert estimate.priced_services[0].unit_price == 0
        assert estimate.estimated_cost == 1200

    def test_default_base_rate(self, evaluator: PricingEvaluator) -> None:
        """Без механика и без оценки клиента используется базовая ставка."""
        estimate = evaluator.estimate(None, "car", [], fallback_cost=None)

        assert estimate.estimated_cost == 500.0
        assert estimate.estimated_cost_range == PriceBand(min=0, max=0)

    def test_non_positive_fallback_ignored(self, evaluator: PricingEvaluator) -> None:
        assert evaluator.estimate(None, "car", [], fallback_cost=0).estimated_cost == 500.0

    def test_range_from_mechanic_price_range(self, evaluator: PricingEvaluator) -> None:
        """Без выбранных услуг диапазон берётся из priceRange механика."""
        estimate = evaluator.estimate(make_mechanic(), "bus", [])

        assert estimate.estimated_cost_range == PriceBand(min=360, max=1800)
        assert estimate.estimated_cost == 500.0


class TestSanitizeServicePrices:
    """Тесты очистки карты цен."""

    def test_sanitize(self) -> None:
        result = PricingEvaluator.sanitize_service_prices({
            "tire_change": {"min": 500, "max": 300},
            "towing": {"min": -5, "max": 100},
            "teleportation": {"min": 1, "max": 2},
            "battery_jump": "cheap",
            "oil_change": {"note": "no numbers"},
        })

        assert result == {
            "tire_change": {"min": 300.0, "max": 500.0},
            "towing": {"min": 0.0, "max": 100.0},
        }

    def test_only_max(self) -> None:
        result = PricingEvaluator.sanitize_service_prices({"towing": {"max": 900}})
        assert result == {"towing": {"min": 0.0, "max": 900.0}}

    def test_missing_side_kept_from_current(self) -> None:
        """Непереданная граница не обнуляется, а берётся из текущей цены услуги."""
        result = PricingEvaluator.sanitize_service_prices(
            {"tire_change": {"max": 450}},
            {"tire_change": PriceBand(min=300, max=500)},
        )
        assert result == {"tire_change": {"min": 300.0, "max": 450.0}}


class TestEvaluateEdit:
    """Тесты для PricingEvaluator.evaluate_edit."""

    def test_small_price_change_applies(self, evaluator: PricingEvaluator, policy: PricingPolicy) -> None:
        decision = evaluator.evaluate_edit(
            make_mechanic(), {"price_range": {"min": 250.0, "max": 1000.0}}, policy
        )

        assert decision.requires_review is False
        assert decision.changes == {"price_range": {"min": 250.0, "max": 1000.0}}
        assert decision.diffs["price_range"]["from"] == {"min": 200.0, "max": 1000.0}

    def test_large_price_change_requires_review(self, evaluator: PricingEvaluator, policy: PricingPolicy) -> None:
        """Сдвиг больше 30% от текущего значения уходит на модерацию."""
        decision = evaluator.evaluate_edit(
            make_mechanic(), {"price_range": {"min": 300.0, "max": 1500.0}}, policy
        )

        assert decision.requires_review is True
        assert decision.reasons == ["price_delta:min", "price_delta:max"]

    def test_partial_price_range_keeps_other_side(
        self, evaluator: PricingEvaluator, policy: PricingPolicy
    ) -> None:
        """Передан только max: min остаётся текущим и не сбрасывается в 0."""
        mechanic = make_mechanic(price_range=PriceBand(min=200, max=500))

        decision = evaluator.evaluate_edit(mechanic, {"price_range": {"max": 600.0}}, policy)

        assert decision.requires_review is False
        assert decision.changes == {"price_range": {"min": 200.0, "max": 600.0}}
        assert decision.diffs["price_range"]["to"] == {"min": 200.0, "max": 600.0}

    def test_partial_price_range_large_delta_requires_review(
        self, evaluator: PricingEvaluator, policy: PricingPolicy
    ) -> None:
        mechanic = make_mechanic(price_range=PriceBand(min=200, max=500))

        decision = evaluator.evaluate_edit(mechanic, {"price_range": {"min": 0.0}}, policy)

        assert decision.requires_review is True
        assert decision.reasons == ["price_delta:min"]
        assert decision.changes["price_range"] == {"min": 0.0, "max": 500.0}

    def test_partial_service_price_merged(self, evaluator: PricingEvaluator, policy: PricingPolicy) -> None:
        decision = evaluator.evaluate_edit(
            make_mechanic(), {"service_prices": {"tire_change": {"max": 550}}}, policy
        )

        assert decision.changes["service_prices"] == {"tire_change": {"min": 300.0, "max": 550.0}}

    def test_sensitive_field_requires_review(self, evaluator: PricingEvaluator, policy: PricingPolicy) -> None:
        decision = evaluator.evaluate_edit(
            make_mechanic(), {"garage": {"name": "Karim Motors"}, "experience_years": 6}, policy
        )

        assert decision.requires_review is True
        assert decision.reasons == ["sensitive_field:garage"]
        assert set(decision.changes) == {"garage", "experience_years"}

    def test_protected_fields_dropped(self, evaluator: PricingEvaluator, policy: PricingPolicy) -> None:
        decision = evaluator.evaluate_edit(
            make_mechanic(), {"rating": 5.0, "verification_status": "verified"}, policy
        )

        assert decision.changes == {}
        assert decision.diffs == {}
        assert decision.requires_review is False

    def test_unchanged_value_not_in_diffs(self, evaluator: PricingEvaluator, policy: PricingPolicy) -> None:
        decision = evaluator.evaluate_edit(make_mechanic(), {"experience_years": 5}, policy)
        assert decision.diffs == {}

    def test_policy_defaults_when_no_price_range(self, evaluator: PricingEvaluator, policy: PricingPolicy) -> None:
        """Без текущего диапазона сравнение идёт с defaultMin/defaultMax политики."""
        mechanic = make_mechanic(price_range=None)

        within = evaluator.evaluate_edit(mechanic, {"price_range": {"min": 120.0, "max": 4000.0}}, policy)
        beyond = evaluator.evaluate_edit(mechanic, {"price_range": {"min": 500.0, "max": 5000.0}}, policy)

        assert within.requires_review is False
        assert beyond.reasons == ["price_delta:min"]


class TestPricingPolicyService:
    """Тесты для PricingPolicyService."""

    @pytest.fixture
    def service(self, mock_db: MagicMock, mock_redis: AsyncMock, mock_event_bus: AsyncMock) -> PricingPolicyService:
        service = PricingPolicyService(mock_db, mock_redis, mock_event_bus)
        service._repo = AsyncMock()
        service._repo.get_latest = AsyncMock(return_value=None)
        service._repo.save = AsyncMock(side_effect=lambda policy, updated_by: policy)
        return service

    @pytest.mark.asyncio
    async def test_cached_policy(self, service: PricingPolicyService, mock_redis: AsyncMock) -> None:
        cached = PricingPolicy(max_price_delta_fraction=0.5)
        mock_redis.get_model = AsyncMock(return_value=cached)

        assert await service.get_current() is cached
        service._repo.get_latest.assert_not_called()

    @pytest.mark.asyncio
    async def test_falls_back_to_config(self, service: PricingPolicyService, mock_redis: AsyncMock) -> None:
        """Без сохранённой политики берутся значения конфига, результат кэшируется."""
        policy = await service.get_current()

        assert policy.max_price_delta_fraction == 0.30
        assert policy.default_min == 100.0
        mock_redis.set_model.assert_awaited_once()
        assert mock_redis.set_model.call_args.args[0] == POLICY_CACHE_KEY

    @pytest.mark.asyncio
    async def test_cache_error_not_fatal(self, service: PricingPolicyService, mock_redis: AsyncMock) -> None:
        mock_redis.get_model = AsyncMock(side_effect=ConnectionError("redis down"))
        mock_redis.set_model = AsyncMock(side_effect=ConnectionError("redis down"))

        policy = await service.get_current()

        assert policy.default_max == 5000.0

    @pytest.mark.asyncio
    async def test_update_merges_and_invalidates(
        self,
        service: PricingPolicyService,
        mock_redis: AsyncMock,
        mock_event_bus: AsyncMock,
        admin_principal,
    ) -> None:
        saved = await service.update(admin_principal, PricingPolicyUpdateDTO(max_price_delta_fraction=0.5))

        assert saved.max_price_delta_fraction == 0.5
        assert saved.default_min == 100.0
        service._repo.save.assert_awaited_once()
        assert service._repo.save.call_args.kwargs["updated_by"] == ADMIN_ID
        mock_redis.delete.assert_awaited_with(POLICY_CACHE_KEY)
        event = mock_event_bus.publish.call_args.args[0]
        assert event.event_type == EventTypes.PRICING_POLICY_UPDATED
