# tests/core/test_lifecycle_service.py
"""
Тесты сервиса жизненного цикла заявки.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import (
    MECHANIC_ID,
    MECHANIC_USER_ID,
    REQUEST_ID,
    USER_ID,
    make_assigned_request,
    make_chat,
    make_mechanic,
    make_request,
)
from src.common.constants import (
    ROOM_MECHANICS,
    RequestStatus,
    UserRole,
    VerificationStatus,
    user_room,
)
from src.common.errors import (
    CapacityExceededError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from src.core.requests.models import RateRequestDTO, RatingInfo, StatusUpdateDTO
from src.core.requests.service import NOT_AVAILABLE_MESSAGE, LifecycleService
from src.core.requests.state_machine import CANCELLATION_LOCK_MESSAGE
from src.core.users.models import Principal
from src.infra.event_bus import EventTypes
from src.shared.models.common import PaginationParams


def _emitted(notifier: MagicMock) -> list[tuple[str, str]]:
    """Пары (комната, событие) из notifier.emit."""
    return [(c.args[0], c.args[1]) for c in notifier.emit.call_args_list]


@pytest.fixture
def chat_service() -> MagicMock:
    chat = MagicMock()
    chat.ensure_for_request = AsyncMock(return_value=make_chat())
    chat.finalize_for_request = AsyncMock(return_value="closed")
    return chat


@pytest.fixture
def service(
    mock_db: MagicMock,
    mock_redis: AsyncMock,
    mock_notifier: MagicMock,
    chat_service: MagicMock,
) -> LifecycleService:
    service = LifecycleService(mock_db, mock_redis, mock_notifier, chat=chat_service)
    service._repo = AsyncMock()
    service._mechanics = AsyncMock()
    service._mechanics.get_by_user_id = AsyncMock(return_value=make_mechanic())
    return service


class TestAccept:
    """Тесты принятия заявки механиком."""

    @pytest.mark.asyncio
    async def test_accept_success(
        self,
        service: LifecycleService,
        mock_notifier: MagicMock,
        chat_service: MagicMock,
        mechanic_principal: Principal,
    ) -> None:
        """Принятие назначает механика, создаёт чат и оповещает стороны."""
        accepted = make_assigned_request()
        service._repo.get_by_id = AsyncMock(return_value=make_request())
        service._repo.count_active = AsyncMock(return_value=0)
        service._repo.accept_if_pending = AsyncMock(return_value=accepted)

        result = await service.accept(mechanic_principal, REQUEST_ID)

        assert result.status == RequestStatus.ACCEPTED
        service._repo.lock_mechanic.assert_awaited_once()
        assert service._repo.accept_if_pending.call_args.args[:2] == (REQUEST_ID, MECHANIC_ID)

        emitted = _emitted(mock_notifier)
        assert (user_room(USER_ID), "request_accepted_notification") in emitted
        assert (ROOM_MECHANICS, "request_taken_notification") in emitted

        chat_service.ensure_for_request.assert_awaited_once_with(accepted)
        chat_ready = [c for c in mock_notifier.emit_many.call_args_list if c.args[1] == "chat_ready"]
        assert chat_ready[0].args[0] == [user_room(USER_ID), user_room(MECHANIC_USER_ID)]
        mock_notifier.publish.assert_awaited_with(
            EventTypes.REQUEST_ACCEPTED,
            {"request_id": REQUEST_ID, "mechanic_id": MECHANIC_ID, "user_id": USER_ID},
        )

    @pytest.mark.asyncio
    async def test_capacity_exceeded(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        """При достижении лимита одновременных заявок принятие отклоняется."""
        service._repo.get_by_id = AsyncMock(return_value=make_request())
        service._repo.count_active = AsyncMock(return_value=1)

        with pytest.raises(CapacityExceededError) as exc_info:
            await service.accept(mechanic_principal, REQUEST_ID)

        assert exc_info.value.details == {"activeJobs": 1, "maxConcurrentJobs": 1}
        service._repo.accept_if_pending.assert_not_called()

    @pytest.mark.asyncio
    async def test_capacity_allows_second_job(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        service._mechanics.get_by_user_id = AsyncMock(return_value=make_mechanic(max_concurrent_jobs=2))
        service._repo.get_by_id = AsyncMock(return_value=make_request())
        service._repo.count_active = AsyncMock(return_value=1)
        service._repo.accept_if_pending = AsyncMock(return_value=make_assigned_request())

        result = await service.accept(mechanic_principal, REQUEST_ID)

        assert result.mechanic_id == MECHANIC_ID

    @pytest.mark.asyncio
    async def test_lost_race(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        """Второй механик проигрывает условный UPDATE и получает конфликт."""
        service._repo.get_by_id = AsyncMock(return_value=make_request())
        service._repo.count_active = AsyncMock(return_value=0)
        service._repo.accept_if_pending = AsyncMock(return_value=None)

        with pytest.raises(ConflictError, match=NOT_AVAILABLE_MESSAGE):
            await service.accept(mechanic_principal, REQUEST_ID)

    @pytest.mark.asyncio
    async def test_already_accepted(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request())

        with pytest.raises(ConflictError, match=NOT_AVAILABLE_MESSAGE):
            await service.accept(mechanic_principal, REQUEST_ID)

    @pytest.mark.asyncio
    async def test_assigned_to_another_mechanic(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_request(mechanic_id="other-mechanic"))

        with pytest.raises(ForbiddenError):
            await service.accept(mechanic_principal, REQUEST_ID)

    @pytest.mark.asyncio
    async def test_unverified_mechanic(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        service._mechanics.get_by_user_id = AsyncMock(
            return_value=make_mechanic(verification_status=VerificationStatus.REJECTED)
        )

        with pytest.raises(ForbiddenError, match="not verified"):
            await service.accept(mechanic_principal, REQUEST_ID)

    @pytest.mark.asyncio
    async def test_unavailable_mechanic(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        service._mechanics.get_by_user_id = AsyncMock(return_value=make_mechanic(is_available=False))

        with pytest.raises(ConflictError, match="Mechanic is not available"):
            await service.accept(mechanic_principal, REQUEST_ID)

    @pytest.mark.asyncio
    async def test_user_cannot_accept(self, service: LifecycleService, user_principal: Principal) -> None:
        with pytest.raises(ForbiddenError):
            await service.accept(user_principal, REQUEST_ID)

    @pytest.mark.asyncio
    async def test_chat_failure_does_not_fail_accept(
        self,
        service: LifecycleService,
        chat_service: MagicMock,
        mechanic_principal: Principal,
    ) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_request())
        service._repo.count_active = AsyncMock(return_value=0)
        service._repo.accept_if_pending = AsyncMock(return_value=make_assigned_request())
        chat_service.ensure_for_request = AsyncMock(side_effect=RuntimeError("db hiccup"))

        result = await service.accept(mechanic_principal, REQUEST_ID)

        assert result.status == RequestStatus.ACCEPTED


class TestReject:
    """Тесты отказа механика."""

    @pytest.mark.asyncio
    async def test_reject_pending(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_request())
        service._repo.transition = AsyncMock(return_value=make_request(status=RequestStatus.REJECTED))

        result = await service.reject(mechanic_principal, REQUEST_ID, reason="Too far")

        assert result.status == RequestStatus.REJECTED
        args = service._repo.transition.call_args
        assert args.args == (REQUEST_ID, RequestStatus.PENDING, RequestStatus.REJECTED)
        assert args.kwargs["cancellation_reason"] == "Too far"

    @pytest.mark.asyncio
    async def test_reject_taken(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request())

        with pytest.raises(ConflictError):
            await service.reject(mechanic_principal, REQUEST_ID)


class TestTransitions:
    """Тесты переходов назначенного механика."""

    @pytest.mark.asyncio
    async def test_start_journey_starts_location_sharing(
        self,
        service: LifecycleService,
        mock_notifier: MagicMock,
        mechanic_principal: Principal,
    ) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request())
        service._repo.transition = AsyncMock(return_value=make_assigned_request(RequestStatus.ON_WAY))

        result = await service.start_journey(mechanic_principal, REQUEST_ID)

        assert result.status == RequestStatus.ON_WAY
        assert (user_room(MECHANIC_USER_ID), "auto_start_location_sharing") in _emitted(mock_notifier)
        rooms = mock_notifier.emit_many.call_args.args[0]
        assert rooms == [user_room(USER_ID), ROOM_MECHANICS, f"request_{REQUEST_ID}"]
        assert mock_notifier.emit_many.call_args.args[1] == "request:on_way"

    @pytest.mark.asyncio
    async def test_arrived_stops_location_sharing(
        self,
        service: LifecycleService,
        mock_notifier: MagicMock,
        mechanic_principal: Principal,
    ) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request(RequestStatus.ON_WAY))
        service._repo.transition = AsyncMock(return_value=make_assigned_request(RequestStatus.ARRIVED))

        await service.mark_arrived(mechanic_principal, REQUEST_ID)

        assert (user_room(MECHANIC_USER_ID), "auto_stop_location_sharing") in _emitted(mock_notifier)

    @pytest.mark.asyncio
    async def test_complete_increments_jobs_and_closes_chat(
        self,
        service: LifecycleService,
        mock_notifier: MagicMock,
        chat_service: MagicMock,
        mechanic_principal: Principal,
    ) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request(RequestStatus.WORKING))
        service._repo.transition = AsyncMock(
            return_value=make_assigned_request(RequestStatus.COMPLETED, actual_cost=750)
        )

        result = await service.complete(mechanic_principal, REQUEST_ID, actual_cost=750, notes="Replaced tire")

        assert result.status == RequestStatus.COMPLETED
        assert service._repo.transition.call_args.kwargs["actual_cost"] == 750
        assert service._repo.transition.call_args.kwargs["note"] is not None
        service._mechanics.increment_completed_jobs.assert_awaited_once()
        chat_service.finalize_for_request.assert_awaited_once_with(REQUEST_ID)
        assert (f"request_{REQUEST_ID}", "service_completed") in _emitted(mock_notifier)
        assert mock_notifier.publish.call_args.args[0] == EventTypes.REQUEST_COMPLETED

    @pytest.mark.asyncio
    async def test_only_assigned_mechanic(self, service: LifecycleService) -> None:
        other = Principal(id="99999999-9999-9999-9999-999999999999", role=UserRole.MECHANIC)
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request())

        with pytest.raises(ForbiddenError):
            await service.start_journey(other, REQUEST_ID)

    @pytest.mark.asyncio
    async def test_skipping_states_is_conflict(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request())

        with pytest.raises(ConflictError, match="Invalid status transition"):
            await service.start_work(mechanic_principal, REQUEST_ID)
        service._repo.transition.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_change_is_conflict(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        """Если статус поменялся между чтением и UPDATE, переход отклоняется."""
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request())
        service._repo.transition = AsyncMock(return_value=None)

        with pytest.raises(ConflictError, match="changed concurrently"):
            await service.start_journey(mechanic_principal, REQUEST_ID)

    @pytest.mark.asyncio
    async def test_not_found(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        service._repo.get_by_id = AsyncMock(return_value=None)

        with pytest.raises(NotFoundError):
            await service.start_journey(mechanic_principal, REQUEST_ID)


class TestUpdateStatus:
    """Тесты общего перехода статуса."""

    @pytest.mark.asyncio
    async def test_user_cancellation_locked_after_journey(
        self,
        service: LifecycleService,
        user_principal: Principal,
    ) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request(RequestStatus.ON_WAY))

        with pytest.raises(ConflictError) as exc_info:
            await service.update_status(user_principal, REQUEST_ID, StatusUpdateDTO(status=RequestStatus.CANCELLED))

        assert exc_info.value.message == CANCELLATION_LOCK_MESSAGE
        service._repo.transition.assert_not_called()

    @pytest.mark.asyncio
    async def test_user_cancels_accepted_notifies_mechanic(
        self,
        service: LifecycleService,
        mock_notifier: MagicMock,
        user_principal: Principal,
    ) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request())
        service._repo.transition = AsyncMock(return_value=make_assigned_request(RequestStatus.CANCELLED))

        result = await service.update_status(
            user_principal,
            REQUEST_ID,
            StatusUpdateDTO(status="cancelled", cancellation_reason="Fixed it myself"),
        )

        assert result.status == RequestStatus.CANCELLED
        assert (user_room(MECHANIC_USER_ID), "request:cancelled") in _emitted(mock_notifier)
        assert mock_notifier.publish.call_args.args[0] == EventTypes.REQUEST_CANCELLED

    @pytest.mark.asyncio
    async def test_legacy_alias_status(self, service: LifecycleService, mechanic_principal: Principal) -> None:
        """in_progress принимается как on_way."""
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request())
        service._repo.transition = AsyncMock(return_value=make_assigned_request(RequestStatus.ON_WAY))

        await service.update_status(mechanic_principal, REQUEST_ID, StatusUpdateDTO(status="in_progress"))

        assert service._repo.transition.call_args.args[2] == RequestStatus.ON_WAY

    @pytest.mark.asyncio
    async def test_unassigned_mechanic_accepts_via_status(
        self,
        service: LifecycleService,
        mechanic_principal: Principal,
    ) -> None:
        """status=accepted от механика работает так же, как PUT /accept."""
        service._repo.get_by_id = AsyncMock(return_value=make_request())
        service._repo.count_active = AsyncMock(return_value=0)
        service._repo.accept_if_pending = AsyncMock(return_value=make_assigned_request())

        result = await service.update_status(mechanic_principal, REQUEST_ID, StatusUpdateDTO(status="accepted"))

        assert result.status == RequestStatus.ACCEPTED
        assert service._repo.accept_if_pending.call_args.args[:2] == (REQUEST_ID, MECHANIC_ID)
        service._repo.transition.assert_not_called()

    @pytest.mark.asyncio
    async def test_stranger_forbidden(self, service: LifecycleService) -> None:
        stranger = Principal(id="99999999-9999-9999-9999-999999999999", role=UserRole.USER)
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request())

        with pytest.raises(ForbiddenError):
            await service.update_status(stranger, REQUEST_ID, StatusUpdateDTO(status=RequestStatus.CANCELLED))

    @pytest.mark.asyncio
    async def test_admin_force_cancel_after_journey(
        self,
        service: LifecycleService,
        admin_principal: Principal,
    ) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request(RequestStatus.WORKING))
        service._repo.transition = AsyncMock(return_value=make_assigned_request(RequestStatus.CANCELLED))

        result = await service.force_status(admin_principal, REQUEST_ID, RequestStatus.CANCELLED)

        assert result.status == RequestStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_force_status_requires_admin(self, service: LifecycleService, user_principal: Principal) -> None:
        with pytest.raises(ForbiddenError):
            await service.force_status(user_principal, REQUEST_ID, RequestStatus.CANCELLED)


class TestRate:
    """Тесты оценки заявки."""

    @pytest.mark.asyncio
    async def test_user_rates_mechanic(
        self,
        service: LifecycleService,
        mock_notifier: MagicMock,
        mock_redis: AsyncMock,
        user_principal: Principal,
    ) -> None:
        rated = make_assigned_request(
            RequestStatus.COMPLETED, rating=RatingInfo(user_rating=5, user_comment="Great")
        )
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request(RequestStatus.COMPLETED))
        service._repo.set_rating = AsyncMock(return_value=rated)
        service._mechanics.update_rating = AsyncMock(return_value=4.55)

        result = await service.rate(user_principal, REQUEST_ID, RateRequestDTO(rating=5, comment="Great"))

        assert result.rating.user_rating == 5
        assert service._repo.set_rating.call_args.args[:3] == (REQUEST_ID, True, 5)
        service._mechanics.update_rating.assert_awaited_once()
        mock_redis.delete.assert_any_await(f"mechanic:{MECHANIC_ID}")

        review_calls = [c for c in mock_notifier.emit.call_args_list if c.args[1] == "review:new"]
        assert review_calls[0].args[0] == user_room(MECHANIC_USER_ID)
        assert review_calls[0].args[2]["review"]["rating"] == 5

    @pytest.mark.asyncio
    async def test_rate_twice_conflict(self, service: LifecycleService, user_principal: Principal) -> None:
        """Повторная оценка той же стороной отклоняется."""
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request(RequestStatus.COMPLETED))
        service._repo.set_rating = AsyncMock(return_value=None)

        with pytest.raises(ConflictError, match="already been rated"):
            await service.rate(user_principal, REQUEST_ID, RateRequestDTO(rating=4))
        service._mechanics.update_rating.assert_not_called()

    @pytest.mark.asyncio
    async def test_rate_not_completed(self, service: LifecycleService, user_principal: Principal) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request(RequestStatus.WORKING))

        with pytest.raises(ConflictError, match="Can only rate completed requests"):
            await service.rate(user_principal, REQUEST_ID, RateRequestDTO(rating=4))

    @pytest.mark.asyncio
    async def test_mechanic_rating_does_not_touch_average(
        self,
        service: LifecycleService,
        mechanic_principal: Principal,
    ) -> None:
        rated = make_assigned_request(RequestStatus.COMPLETED, rating=RatingInfo(mechanic_rating=4))
        service._repo.get_by_id = AsyncMock(return_value=make_assigned_request(RequestStatus.COMPLETED))
        service._repo.set_rating = AsyncMock(return_value=rated)

        await service.rate(mechanic_principal, REQUEST_ID, RateRequestDTO(rating=4))

        assert service._repo.set_rating.call_args.args[1] is False
        service._mechanics.update_rating.assert_not_called()


class TestRead:
    """Тесты чтения заявок."""

    @pytest.mark.asyncio
    async def test_get_request_caches(
        self,
        service: LifecycleService,
        mock_redis: AsyncMock,
        user_principal: Principal,
    ) -> None:
        service._repo.get_by_id = AsyncMock(return_value=make_request())

        result = await service.get_request(user_principal, REQUEST_ID)

        assert result.id == REQUEST_ID
        assert mock_redis.set_model.call_args.args[0] == f"request:{REQUEST_ID}"

    @pytest.mark.asyncio
    async def test_get_request_from_cache(
        self,
        service: LifecycleService,
        mock_redis: AsyncMock,
        user_principal: Principal,
    ) -> None:
        mock_redis.get_model = AsyncMock(return_value=make_request())

        await service.get_request(user_principal, REQUEST_ID)

        service._repo.get_by_id.assert_not_called()

    @pytest.mark.asyncio
    async def test_stranger_cannot_view(self, service: LifecycleService) -> None:
        stranger = Principal(id="99999999-9999-9999-9999-999999999999", role=UserRole.USER)
        service._repo.get_by_id = AsyncMock(return_value=make_request())

        with pytest.raises(ForbiddenError):
            await service.get_request(stranger, REQUEST_ID)

    def test_mechanic_can_view_pending_only(self) -> None:
        other_mechanic = Principal(id="99999999-9999-9999-9999-999999999999", role=UserRole.MECHANIC)

        assert LifecycleService.can_view(other_mechanic, make_request()) is True
        assert LifecycleService.can_view(other_mechanic, make_assigned_request()) is False

    @pytest.mark.asyncio
    async def test_list_for_user_paginates(self, service: LifecycleService, user_principal: Principal) -> None:
        service._repo.list_for_user = AsyncMock(return_value=([make_request()], 41))

        page = await service.list_for_user(user_principal, None, PaginationParams(page=2, limit=20))

        assert page.total == 41
        assert page.total_pages == 3
        service._repo.list_for_user.assert_awaited_once_with(USER_ID, None, 20, 20)

    @pytest.mark.asyncio
    async def test_list_all_requires_admin(self, service: LifecycleService, user_principal: Principal) -> None:
        with pytest.raises(ForbiddenError):
            await service.list_all(user_principal, None, PaginationParams())
