#!/usr/bin/env python3
# main.py
"""
Главная точка входа приложения.
Запускает HTTP API с realtime-хабом и следит за доступностью PostgreSQL.

Код выхода: 0 после штатной остановки, 1 если БД недоступна
дольше DB_UNREACHABLE_GRACE_SECONDS.
"""

from __future__ import annotations

import asyncio
import signal
import sys
import time

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg


EXIT_OK = 0
EXIT_STORE_UNREACHABLE = 1

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_exit_code: int = EXIT_OK


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def watch_database(
    grace_seconds: float,
    interval: float,
    clock=time.monotonic,
) -> bool:
    """
    Проверяет БД каждые interval секунд.

    Returns:
        False если БД не отвечала дольше grace_seconds подряд
    """
    from src.infra.database import get_db

    db = get_db()
    failing_since: float | None = None

    while _shutdown_event is None or not _shutdown_event.is_set():
        if await db.health_check():
            if failing_since is not None:
                await log_info("PostgreSQL снова доступен", type_msg=TypeMsg.INFO)
            failing_since = None
        else:
            now = clock()
            if failing_since is None:
                failing_since = now
                await log_info("PostgreSQL не отвечает", type_msg=TypeMsg.WARNING)
            elif now - failing_since >= grace_seconds:
                await log_error(f"PostgreSQL недоступен дольше {grace_seconds} с, остановка")
                return False
        await asyncio.sleep(interval)
    return True


async def run_api() -> None:
    """Запускает HTTP API и realtime-хаб."""
    global _exit_code
    import uvicorn

    await log_info(
        f"Запуск API на порту {settings.server.PORT}...",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        "src.services.api.app:app",
        host=settings.server.HOST,
        port=settings.server.PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )
    server = uvicorn.Server(config)
    # Сигналы обрабатывает main.py
    server.install_signal_handlers = lambda: None

    server_task = asyncio.create_task(server.serve())

    # Ждём завершения lifespan: до этого пул БД ещё не создан
    while not server.started and not server_task.done():
        await asyncio.sleep(0.1)

    watchdog_task = asyncio.create_task(watch_database(
        settings.database.DB_UNREACHABLE_GRACE_SECONDS,
        settings.database.DB_HEALTH_CHECK_INTERVAL,
    ))
    shutdown_task = asyncio.create_task(_shutdown_event.wait())

    done, _ = await asyncio.wait(
        {server_task, watchdog_task, shutdown_task},
        return_when=asyncio.FIRST_COMPLETED,
    )

    if watchdog_task in done and watchdog_task.result() is False:
        _exit_code = EXIT_STORE_UNREACHABLE

    server.should_exit = True
    for task in (watchdog_task, shutdown_task):
        if not task.done():
            task.cancel()
    try:
        await server_task
    except asyncio.CancelledError:
        await log_info("API: graceful shutdown", type_msg=TypeMsg.DEBUG)

    if server_task.done() and not server_task.cancelled() and server_task.exception() is not None:
        await log_error(f"API остановлен с ошибкой: {server_task.exception()}")
        _exit_code = EXIT_STORE_UNREACHABLE


async def main() -> int:
    """Главная функция запуска."""
    setup_logging()
    setup_signal_handlers()

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}: запуск ({settings.system.ENVIRONMENT})",
        type_msg=TypeMsg.INFO,
    )

    try:
        await run_api()
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        return EXIT_STORE_UNREACHABLE

    await log_info(f"Приложение остановлено (код {_exit_code})", type_msg=TypeMsg.INFO)
    return _exit_code


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(EXIT_OK)
