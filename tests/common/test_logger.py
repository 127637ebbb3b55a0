# tests/common/test_logger.py
"""
Тесты для модуля логирования.
"""

from __future__ import annotations

import json
import logging
from unittest.mock import patch

import pytest

from src.common.constants import TypeMsg
from src.common.logger import (
    ColoredFormatter,
    JsonFormatter,
    _get_caller_info,
    _loggers,
    get_logger,
    log_debug,
    log_error,
    log_info,
    log_warning,
    setup_logging,
)


def _record(message: str = "test message", level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )


class TestJsonFormatter:
    """Тесты для JsonFormatter."""

    def test_format_basic(self) -> None:
        """Проверяет базовое форматирование."""
        result = json.loads(JsonFormatter().format(_record()))

        assert result["level"] == "INFO"
        assert result["logger"] == "test"
        assert result["message"] == "test message"
        assert result["timestamp"].endswith("Z")

    def test_format_with_extra(self) -> None:
        """Проверяет форматирование с дополнительными данными."""
        record = _record()
        record.extra_data = {"request_id": "r1"}

        result = json.loads(JsonFormatter().format(record))

        assert result["extra"] == {"request_id": "r1"}

    def test_format_cyrillic(self) -> None:
        """Кириллица не экранируется."""
        output = JsonFormatter().format(_record("Заявка принята"))
        assert "Заявка принята" in output


class TestColoredFormatter:
    """Тесты для ColoredFormatter."""

    def test_level_colored(self) -> None:
        output = ColoredFormatter().format(_record(level=logging.ERROR))
        assert "\033[31m[ERROR]" in output
        assert "test message" in output

    def test_caller_info_rendered(self) -> None:
        record = _record()
        record.extra_data = {
            "caller_module": "src.core.payments.service",
            "caller_function": "record_payment",
            "caller_file": "service.py",
            "caller_line": 42,
        }
        output = ColoredFormatter().format(record)
        assert "src.core.payments.service.record_payment()" in output
        assert "service.py:42" in output


class TestGetLogger:
    """Тесты для get_logger."""

    def test_cached_by_name(self) -> None:
        assert get_logger("test_cached") is get_logger("test_cached")
        assert "test_cached" in _loggers

    def test_does_not_propagate(self) -> None:
        assert get_logger("test_propagate").propagate is False

    def test_setup_logging_idempotent(self) -> None:
        setup_logging()
        setup_logging()
        assert logging.getLogger("asyncpg").level == logging.WARNING


class TestCallerInfo:
    """Тесты для _get_caller_info."""

    def test_returns_caller_of_helper(self) -> None:
        def log_info():  # имя совпадает с хелпером и пропускается
            return _get_caller_info()

        info = log_info()

        assert info["caller_function"] == "test_returns_caller_of_helper"
        assert info["caller_file"] == "test_logger.py"


class TestAsyncHelpers:
    """Тесты для асинхронных хелперов."""

    @pytest.mark.asyncio
    async def test_log_info_level_from_type_msg(self) -> None:
        logger = get_logger("roadside")
        with patch.object(logger, "log") as mock_log:
            await log_info("hello", type_msg=TypeMsg.WARNING)

        level, message = mock_log.call_args.args
        assert level == logging.WARNING
        assert message == "hello"
        assert "caller_function" in mock_log.call_args.kwargs["extra"]["extra_data"]

    @pytest.mark.asyncio
    async def test_log_debug_and_warning(self) -> None:
        logger = get_logger("roadside")
        with patch.object(logger, "log") as mock_log:
            await log_debug("d")
            await log_warning("w")

        levels = [c.args[0] for c in mock_log.call_args_list]
        assert levels == [logging.DEBUG, logging.WARNING]

    @pytest.mark.asyncio
    async def test_log_error_passes_exc_info(self) -> None:
        logger = get_logger("roadside")
        with patch.object(logger, "error") as mock_error:
            await log_error("failed", extra={"request_id": "r1"}, exc_info=True)

        assert mock_error.call_args.kwargs["exc_info"] is True
        assert mock_error.call_args.kwargs["extra"]["extra_data"]["request_id"] == "r1"
