"""Tests for the loguru setup helpers."""

import logging

import pytest
from loguru import logger

from utils.log import LEVEL_NAMES, custom_exception_handler, setup_logging


@pytest.fixture
def captured():
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record), level="DEBUG", format="{message}")
    yield messages
    logger.remove(handler_id)


class TestExceptionHandler:
    def test_unclosed_session_noise_dropped(self, captured):
        custom_exception_handler(None, {"message": "Unclosed client session"})
        custom_exception_handler(None, {"message": "Unclosed connector"})
        assert captured == []

    def test_real_errors_logged(self, captured):
        error = RuntimeError("boom")
        custom_exception_handler(None, {"message": "Task exception was never retrieved", "exception": error})

        assert len(captured) == 1
        assert captured[0]["level"].name == "ERROR"
        assert captured[0]["exception"].value is error


class TestSetup:
    def test_short_level_names_and_intercept(self):
        captured = []
        setup_logging("debug")
        # setup_logging() replaces every sink, add the capture afterwards
        handler_id = logger.add(lambda m: captured.append(m.record), level="DEBUG", format="{message}")

        logger.log("NOTICE", "milestone")
        logging.getLogger("discord.gateway").warning("heartbeat blocked")
        logger.remove(handler_id)

        assert captured[0]["extra"]["short_level"] == LEVEL_NAMES["NOTICE"] == "NOTE"
        assert captured[1]["message"] == "heartbeat blocked"
        assert captured[1]["extra"]["short_level"] == "WARN"

    def test_presets_hide_library_debug(self):
        setup_logging("verbose")
        assert logging.getLogger("discord").level == logging.WARNING
