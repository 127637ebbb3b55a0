# tests/core/test_user_service.py
"""
Тесты блокировки пользователей администратором.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import ADMIN_ID, USER_ID
from src.common.constants import ROOM_ADMINS, UserRole, user_room
from src.common.errors import ConflictError, ForbiddenError, NotFoundError
from src.core.users.models import Principal, User
from src.core.users.service import UserService
from src.infra.event_bus import EventTypes


@pytest.fixture
def service(mock_db: MagicMock, mock_notifier: MagicMock) -> UserService:
    service = UserService(mock_db, mock_notifier)
    service._repo = AsyncMock()
    service._repo.set_active = AsyncMock(
        side_effect=lambda user_id, active: User(id=user_id, name="Rahim", role=UserRole.USER, is_active=active)
    )
    return service


class TestSetActive:
    """Тесты для UserService.set_active."""

    @pytest.mark.asyncio
    async def test_deactivate(
        self,
        service: UserService,
        mock_notifier: MagicMock,
        admin_principal: Principal,
    ) -> None:
        user = await service.set_active(admin_principal, USER_ID, False)

        assert user.is_active is False
        service._repo.set_active.assert_awaited_once_with(USER_ID, False)
        rooms = [call.args[0] for call in mock_notifier.emit.call_args_list]
        assert rooms == [user_room(USER_ID), ROOM_ADMINS]
        assert mock_notifier.emit.call_args.args[2]["isActive"] is False
        event_type, payload = mock_notifier.publish.call_args.args
        assert event_type == EventTypes.USER_STATUS_CHANGED
        assert payload == {"user_id": USER_ID, "is_active": False, "admin_id": ADMIN_ID}

    @pytest.mark.asyncio
    async def test_missing_user(self, service: UserService, mock_notifier: MagicMock, admin_principal: Principal) -> None:
        service._repo.set_active = AsyncMock(return_value=None)

        with pytest.raises(NotFoundError):
            await service.set_active(admin_principal, "abc", True)
        mock_notifier.emit.assert_not_called()

    @pytest.mark.asyncio
    async def test_admin_cannot_lock_self_out(self, service: UserService, admin_principal: Principal) -> None:
        with pytest.raises(ConflictError):
            await service.set_active(admin_principal, ADMIN_ID, False)
        service._repo.set_active.assert_not_called()

    @pytest.mark.asyncio
    async def test_requires_admin(self, service: UserService, user_principal: Principal) -> None:
        with pytest.raises(ForbiddenError):
            await service.set_active(user_principal, USER_ID, True)
