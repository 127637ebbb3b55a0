#!/usr/bin/env python3
"""
Entrypoint для HTTP API и realtime-хаба (контейнерный запуск).

Запуск:
    python entrypoints/entrypoint_api.py

Порт по умолчанию: 5002 (переменная PORT)
"""

import sys
from pathlib import Path

# Добавляем корневую директорию проекта в путь
project_root = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(project_root))

import uvicorn

from src.config import settings


def main() -> None:
    """Запустить API."""
    uvicorn.run(
        "src.services.api.app:app",
        host=settings.server.HOST,
        port=settings.server.PORT,
        log_level=settings.logging.LOG_LEVEL.lower(),
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
