# src/core/maintenance/service.py
"""
Режим обслуживания.
Флаг хранится в таблице settings, значение кэшируется в Redis на короткий TTL.
Там же лежат прочие настройки платформы (GET/PUT /admin/settings).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from src.common.constants import TypeMsg
from src.common.errors import ForbiddenError, ValidationFailedError
from src.common.logger import log_info, log_error
from src.core.maintenance.repository import SettingsRepository
from src.core.notifications.service import NotificationService
from src.core.users.models import Principal
from src.infra.database import DatabaseManager
from src.infra.event_bus import EventTypes
from src.infra.redis_client import RedisClient
from src.shared.models.common import CamelModel


MODE_KEY = "maintenanceMode"
LOG_KEY = "maintenanceLog"
CACHE_KEY = "maintenance:enabled"
RESERVED_KEYS = frozenset({MODE_KEY, LOG_KEY})
SETTING_KEY_MAX_LENGTH = 64


class MaintenanceStatus(CamelModel):
    maintenance: bool
    message: str = ""


class MaintenanceService:
    """
    Сервис режима обслуживания.

    Redis - только кэш: при его недоступности флаг читается из БД.
    """

    def __init__(
        self,
        db: DatabaseManager,
        redis: Optional[RedisClient],
        notifier: NotificationService,
    ) -> None:
        from src.config import settings

        self._db = db
        self._repo = SettingsRepository(db)
        self._redis = redis
        self._notifier = notifier
        self._ttl = settings.redis_ttl.MAINTENANCE_TTL
        self._message = settings.maintenance.MAINTENANCE_MESSAGE
        self._initial = settings.maintenance.MAINTENANCE_MODE
        self._defaults: dict[str, Any] = {
            "platformName": settings.system.PROJECT_NAME,
            "commissionRate": settings.payments.DEFAULT_COMMISSION_RATE,
            "slaMinutes": 45,
            "verificationRequired": True,
        }

    async def seed(self) -> None:
        """Записывает начальное значение из MAINTENANCE_MODE, если флага ещё нет."""
        created = await self._repo.set_default(MODE_KEY, self._initial)
        if created:
            await log_info(f"Режим обслуживания инициализирован: {self._initial}", type_msg=TypeMsg.INFO)

    async def is_enabled(self) -> bool:
        if self._redis is not None:
            try:
                cached = await self._redis.get(CACHE_KEY)
                if cached is not None:
                    return cached == "1"
            except Exception as e:
                await log_error(f"Ошибка чтения флага обслуживания из Redis: {e}")

        enabled = bool(await self._repo.get(MODE_KEY, False))
        await self._cache(enabled)
        return enabled

    async def status(self) -> MaintenanceStatus:
        enabled = await self.is_enabled()
        return MaintenanceStatus(maintenance=enabled, message=self._message if enabled else "")

    async def _cache(self, enabled: bool) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(CACHE_KEY, "1" if enabled else "0", ttl=self._ttl)
        except Exception as e:
            await log_error(f"Ошибка записи флага обслуживания в Redis: {e}")

    # =========================================================================
    # ПЕРЕКЛЮЧЕНИЕ
    # =========================================================================

    async def start(self, admin: Principal, reason: str | None = None) -> MaintenanceStatus:
        """Включает режим обслуживания и оповещает всех подключённых клиентов."""
        await self._toggle(admin, True, reason)
        return MaintenanceStatus(maintenance=True, message=self._message)

    async def stop(self, admin: Principal) -> MaintenanceStatus:
        await self._toggle(admin, False, None)
        return MaintenanceStatus(maintenance=False)

    async def _toggle(self, admin: Principal, enabled: bool, reason: str | None) -> None:
        if not admin.is_admin:
            raise ForbiddenError("Admin role required")

        at = datetime.now(timezone.utc).isoformat()
        entry: dict[str, Any] = {"action": "start" if enabled else "stop", "at": at, "by": admin.id}
        if reason:
            entry["reason"] = reason

        async with self._db.transaction() as conn:
            await self._repo.set(MODE_KEY, enabled, conn=conn)
            await self._repo.append(LOG_KEY, entry, conn=conn)
        await self._cache(enabled)

        await log_info(
            f"Режим обслуживания {'включён' if enabled else 'выключен'} администратором {admin.id}"
            + (f": {reason}" if reason else ""),
            type_msg=TypeMsg.WARNING if enabled else TypeMsg.INFO,
        )

        if enabled:
            await self._notifier.emit_all("maintenance:started", {"reason": reason, "at": at})
        else:
            await self._notifier.emit_all("maintenance:stopped", {"at": at})
        await self._notifier.publish(
            EventTypes.MAINTENANCE_TOGGLED,
            {"enabled": enabled, "by": admin.id, "reason": reason},
        )

    # =========================================================================
    # НАСТРОЙКИ ПЛАТФОРМЫ
    # =========================================================================

    async def list_settings(self, admin: Principal) -> dict[str, Any]:
        """Значения по умолчанию, перекрытые сохранёнными; журнал обслуживания не отдаётся."""
        if not admin.is_admin:
            raise ForbiddenError("Admin role required")
        stored = await self._repo.get_all()
        stored.pop(LOG_KEY, None)
        return {**self._defaults, MODE_KEY: self._initial, **stored}

    async def update_settings(self, admin: Principal, values: dict[str, Any]) -> dict[str, Any]:
        """
        Записывает переданные ключи (upsert), остальные не трогает.
        Флаг и журнал обслуживания меняются только через start/stop.
        """
        if not admin.is_admin:
            raise ForbiddenError("Admin role required")
        if not values:
            raise ValidationFailedError("No settings provided")
        reserved = sorted(RESERVED_KEYS.intersection(values))
        if reserved:
            raise ValidationFailedError(
                f"{', '.join(reserved)} is managed by /admin/maintenance",
                details={"keys": reserved},
            )
        invalid = sorted(key for key in values if not key.strip() or len(key) > SETTING_KEY_MAX_LENGTH)
        if invalid:
            raise ValidationFailedError(
                f"Setting keys must be 1-{SETTING_KEY_MAX_LENGTH} characters",
                details={"keys": invalid},
            )

        async with self._db.transaction() as conn:
            for key, value in values.items():
                await self._repo.set(key, value, conn=conn)

        keys = sorted(values)
        await log_info(f"Настройки {', '.join(keys)} изменены администратором {admin.id}", type_msg=TypeMsg.INFO)
        await self._notifier.publish(EventTypes.SETTING_UPDATED, {"keys": keys, "by": admin.id})
        return await self.list_settings(admin)
