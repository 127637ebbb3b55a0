# src/services/realtime_ws/rate_limit.py
"""
Ограничители частоты для realtime-соединений.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Callable


class SlidingWindow:
    """Не более max_events событий за window_seconds (по отметкам времени)."""

    def __init__(self, max_events: int, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock

    def hit(self, stamps: deque[float]) -> bool:
        """
        Регистрирует событие в очереди отметок.

        Returns:
            False если лимит исчерпан (событие не засчитано)
        """
        now = self._clock()
        while stamps and now - stamps[0] >= self.window_seconds:
            stamps.popleft()
        if len(stamps) >= self.max_events:
            return False
        stamps.append(now)
        return True


class ConnectionRateLimiter:
    """
    Попытки подключения по адресу источника (20 за 60 с по умолчанию).
    Раз в окно адреса без свежих попыток удаляются.
    """

    def __init__(
        self,
        max_attempts: int = 20,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = SlidingWindow(max_attempts, window_seconds, clock)
        self._clock = clock
        self._attempts: dict[str, deque[float]] = {}
        self._next_sweep = clock() + window_seconds

    def allow(self, address: str) -> bool:
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)
        stamps = self._attempts.setdefault(address, deque())
        return self._window.hit(stamps)

    def _sweep(self, now: float) -> None:
        window = self._window.window_seconds
        stale = [address for address, stamps in self._attempts.items() if not stamps or now - stamps[-1] >= window]
        for address in stale:
            del self._attempts[address]
        self._next_sweep = now + window

    def reset(self) -> None:
        self._attempts.clear()
