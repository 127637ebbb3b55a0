# tests/core/test_dispatch_service.py
"""
Тесты диспетчера заявок.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from conftest import MECHANIC_ID, MECHANIC_USER_ID, REQUEST_ID, USER_ID, make_mechanic
from src.common.constants import ROOM_ADMINS, RequestStatus, user_room
from src.common.errors import InternalError, NotFoundError
from src.core.dispatch.service import Dispatcher
from src.core.pricing.service import PricingEvaluator
from src.core.requests.models import CreateRequestDTO, ServiceRequest
from src.core.users.models import Principal
from src.infra.event_bus import EventTypes


def _dto(**overrides: Any) -> CreateRequestDTO:
    body: dict[str, Any] = {
        "vehicleType": "truck",
        "problemType": "flat_tire",
        "description": "  Rear tire burst on the highway  ",
        "pickupLocation": {"longitude": 90.4, "latitude": 23.8, "address": "Airport Rd"},
        "selectedServices": ["tire_change"],
    }
    body.update(overrides)
    return CreateRequestDTO.model_validate(body)


def _saved(draft: ServiceRequest) -> ServiceRequest:
    return draft.model_copy(update={"id": REQUEST_ID, "created_at": datetime.now(timezone.utc)})


@pytest.fixture
def geo() -> MagicMock:
    geo = MagicMock()
    geo.find_available_nearby = AsyncMock(return_value=[])
    return geo


@pytest.fixture
def dispatcher(mock_db: MagicMock, mock_notifier: MagicMock, geo: MagicMock) -> Dispatcher:
    dispatcher = Dispatcher(mock_db, mock_notifier, evaluator=PricingEvaluator(default_base_rate=500.0), geo=geo)
    dispatcher._requests = AsyncMock()
    dispatcher._requests.create = AsyncMock(side_effect=_saved)
    dispatcher._mechanics = AsyncMock()
    return dispatcher


class TestCreateRequest:
    """Тесты создания заявки."""

    @pytest.mark.asyncio
    async def test_direct_request_priced_and_offered(
        self,
        dispatcher: Dispatcher,
        mock_notifier: MagicMock,
        geo: MagicMock,
        user_principal: Principal,
    ) -> None:
        """Заявка выбранному механику: цена из его прайса, предложение только ему."""
        dispatcher._mechanics.get_by_id = AsyncMock(return_value=make_mechanic())

        request = await dispatcher.create_request(user_principal, _dto(mechanicId=MECHANIC_ID))

        assert request.status == RequestStatus.PENDING
        assert request.user_id == USER_ID
        assert request.mechanic_id == MECHANIC_ID
        assert request.description == "Rear tire burst on the highway"
        assert request.vehicle_multiplier == 1.5
        assert request.estimated_cost == 750
        assert request.selected_services[0].unit_price == 750

        offer = mock_notifier.emit.call_args_list[0]
        assert offer.args[0] == user_room(MECHANIC_USER_ID)
        assert offer.args[1] == "new_request_notification"
        assert offer.args[2]["type"] == "NEW_REQUEST"
        assert 0 < offer.args[2]["distance"] < 5
        geo.find_available_nearby.assert_not_called()

        admin_call = mock_notifier.emit.call_args_list[-1]
        assert admin_call.args[:2] == (ROOM_ADMINS, "new_request_created")
        assert mock_notifier.publish.call_args.args[0] == EventTypes.REQUEST_CREATED

    @pytest.mark.asyncio
    async def test_broadcast_to_nearby(
        self,
        dispatcher: Dispatcher,
        mock_notifier: MagicMock,
        geo: MagicMock,
        user_principal: Principal,
    ) -> None:
        """Без mechanicId предложение получают все доступные механики в радиусе."""
        first = make_mechanic(id="m1", user_id="u-m1", distance_km=1.234)
        second = make_mechanic(id="m2", user_id="u-m2", distance_km=7.5)
        geo.find_available_nearby = AsyncMock(return_value=[first, second])

        request = await dispatcher.create_request(user_principal, _dto(selectedServices=[]))

        assert request.mechanic_id is None
        assert request.estimated_cost == 500.0
        offers = [c for c in mock_notifier.emit.call_args_list if c.args[1] == "new_request_notification"]
        assert [c.args[0] for c in offers] == [user_room("u-m1"), user_room("u-m2")]
        assert offers[0].args[2]["distance"] == 1.23

        kwargs = geo.find_available_nearby.call_args.kwargs
        assert kwargs["vehicle_type"] == "truck"
        assert kwargs["radius_m"] == 20000

    @pytest.mark.asyncio
    async def test_client_estimate_used_without_prices(
        self,
        dispatcher: Dispatcher,
        user_principal: Principal,
    ) -> None:
        request = await dispatcher.create_request(user_principal, _dto(selectedServices=[], estimatedCost=900))
        assert request.estimated_cost == 900

    @pytest.mark.asyncio
    async def test_unknown_mechanic(self, dispatcher: Dispatcher, user_principal: Principal) -> None:
        dispatcher._mechanics.get_by_id = AsyncMock(return_value=None)

        with pytest.raises(NotFoundError):
            await dispatcher.create_request(user_principal, _dto(mechanicId="missing"))
        dispatcher._requests.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_storage_failure(
        self,
        dispatcher: Dispatcher,
        mock_notifier: MagicMock,
        user_principal: Principal,
    ) -> None:
        dispatcher._requests.create = AsyncMock(side_effect=RuntimeError("disk full"))

        with pytest.raises(InternalError):
            await dispatcher.create_request(user_principal, _dto())
        mock_notifier.emit.assert_not_called()


class TestCreateRequestDTO:
    """Тесты валидации тела заявки."""

    def test_zero_coordinates_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _dto(pickupLocation={"longitude": 0, "latitude": 23.8})

    def test_blank_description_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _dto(description="   ")

    def test_unknown_vehicle_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _dto(vehicleType="spaceship")

    def test_empty_mechanic_id_is_broadcast(self) -> None:
        assert _dto(mechanicId="").mechanic_id is None

    def test_selected_service_objects(self) -> None:
        dto = _dto(selectedServices=[{"key": "towing", "notes": "to garage"}])
        assert dto.selected_services[0].to_priced().notes == "to garage"


class TestMatch:
    """Тесты подбора ближайшего механика."""

    @pytest.mark.asyncio
    async def test_nearest(self, dispatcher: Dispatcher, geo: MagicMock) -> None:
        nearest = make_mechanic(id="m1")
        geo.find_available_nearby = AsyncMock(return_value=[nearest, make_mechanic(id="m2")])

        assert (await dispatcher.match(90.4, 23.8, "car")).id == "m1"

    @pytest.mark.asyncio
    async def test_nobody_nearby(self, dispatcher: Dispatcher) -> None:
        with pytest.raises(NotFoundError, match="No mechanics available nearby"):
            await dispatcher.match(90.4, 23.8)
