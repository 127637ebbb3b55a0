# src/core/pricing/policy.py
"""
Действующая политика цен: чтение с кэшем и сохранение администратором.
"""

from __future__ import annotations

from src.common.constants import TypeMsg
from src.common.logger import log_info, log_error
from src.core.pricing.models import PricingPolicy, PricingPolicyUpdateDTO
from src.core.pricing.repository import PricingPolicyRepository
from src.core.users.models import Principal
from src.infra.database import DatabaseManager
from src.infra.redis_client import RedisClient
from src.infra.event_bus import EventBus, DomainEvent, EventTypes


POLICY_CACHE_KEY = "pricing:policy"


class PricingPolicyService:
    """Сервис политики цен."""

    def __init__(self, db: DatabaseManager, redis: RedisClient, event_bus: EventBus | None = None) -> None:
        self._repo = PricingPolicyRepository(db)
        self._redis = redis
        self._event_bus = event_bus

    async def get_current(self) -> PricingPolicy:
        """
        Последняя сохранённая политика; если её нет - значения из конфига.
        """
        try:
            cached = await self._redis.get_model(POLICY_CACHE_KEY, PricingPolicy)
        except Exception as e:
            await log_error(f"Ошибка чтения кэша политики цен: {e}")
            cached = None
        if cached is not None:
            return cached

        policy = await self._repo.get_latest() or PricingPolicy.from_settings()

        try:
            from src.config import settings
            await self._redis.set_model(POLICY_CACHE_KEY, policy, ttl=settings.redis_ttl.POLICY_TTL)
        except Exception as e:
            await log_error(f"Ошибка записи кэша политики цен: {e}")
        return policy

    async def update(self, admin: Principal, dto: PricingPolicyUpdateDTO) -> PricingPolicy:
        """
        Сохраняет новую версию политики поверх текущей.

        Args:
            admin: Администратор
            dto: Изменяемые поля

        Returns:
            Сохранённая политика
        """
        current = await self.get_current()
        changes = dto.model_dump(exclude_unset=True, exclude_none=True)
        merged = PricingPolicy.model_validate({**current.model_dump(), **changes})
        saved = await self._repo.save(merged, updated_by=admin.id)

        try:
            await self._redis.delete(POLICY_CACHE_KEY)
        except Exception as e:
            await log_error(f"Ошибка сброса кэша политики цен: {e}")

        if self._event_bus is not None:
            try:
                await self._event_bus.publish(DomainEvent(
                    event_type=EventTypes.PRICING_POLICY_UPDATED,
                    payload={"updated_by": admin.id},
                ))
            except Exception as pub_error:
                await log_error(f"Не удалось опубликовать PRICING_POLICY_UPDATED: {pub_error}")

        await log_info(
            f"Политика цен обновлена администратором {admin.id}: "
            f"delta={saved.max_price_delta_fraction} min={saved.default_min} max={saved.default_max}",
            type_msg=TypeMsg.INFO,
        )
        return saved
