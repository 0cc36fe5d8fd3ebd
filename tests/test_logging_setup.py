"""Tests for infrastructure/logging_setup.py."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator

import pytest

from infrastructure.logging_setup import configure_logging


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    noisy_levels = {name: logging.getLogger(name).level for name in ("redis", "asyncio")}
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, lvl in noisy_levels.items():
        logging.getLogger(name).setLevel(lvl)


class TestConfigureLogging:
    def test_single_stderr_handler(self, restore_root_logger) -> None:
        configure_logging(logging.DEBUG)
        root = logging.getLogger()

        assert root.level == logging.DEBUG
        stream_handlers = [h for h in root.handlers if isinstance(h, logging.StreamHandler)]
        assert len(stream_handlers) == 1
        assert stream_handlers[0].stream is sys.stderr

    def test_idempotent(self, restore_root_logger) -> None:
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_quiets_third_party_loggers(self, restore_root_logger) -> None:
        configure_logging(logging.DEBUG)
        assert logging.getLogger("redis").level == logging.WARNING
        assert logging.getLogger("asyncio").level == logging.WARNING

    def test_nothing_written_to_stdout(self, restore_root_logger, capsys) -> None:
        configure_logging()
        logging.getLogger("infrastructure.cache").warning("falling back to memory cache")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "falling back to memory cache" in captured.err
