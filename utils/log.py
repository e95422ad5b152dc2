# Copyright (C) 2026 grodz
#
# This file is part of Carousel.
#
# Carousel is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Logging Setup

loguru sink with clean 4-character level names:
- DEBUG    → [DBUG] - Technical details for debugging
- INFO     → [INFO] - Normal operation messages
- NOTICE   → [NOTE] - Milestones worth seeing even in minimal mode
- WARNING  → [WARN] - Issues that don't stop operation
- ERROR    → [FAIL] - Recoverable failures
- CRITICAL → [CRIT] - Catastrophic failures

CAUTION: Changing LEVEL_NAMES may break log parsing or monitoring tools.

discord.py logs through the standard logging module; InterceptHandler
forwards those records into loguru so everything shares one format.
"""

import inspect
import logging
import sys

from loguru import logger


LEVEL_NAMES = {
    "TRACE": "TRCE",
    "DEBUG": "DBUG",
    "INFO": "INFO",
    "SUCCESS": "SUCC",
    "NOTICE": "NOTE",
    "WARNING": "WARN",
    "ERROR": "FAIL",
    "CRITICAL": "CRIT",
}

# Verbosity preset -> minimum loguru level
PRESETS = {
    "minimal": "NOTICE",
    "verbose": "INFO",
    "debug": "DEBUG",
}

FORMAT = "[{time:YYYY-MM-DD HH:mm:ss}] [{extra[short_level]}] {name}: {message}\n{exception}"

NOISY_LOOP_MESSAGES = ("Unclosed client session", "Unclosed connector")


def _ensure_notice_level() -> None:
    try:
        logger.level("NOTICE")
    except ValueError:
        logger.level("NOTICE", no=25, color="<cyan><bold>")


def _short_level(record) -> None:
    record["extra"]["short_level"] = LEVEL_NAMES.get(record["level"].name, record["level"].name[:4])


class InterceptHandler(logging.Handler):
    """Route standard logging records (discord.py, asyncio) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller outside the logging module so {name} is accurate
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "verbose") -> None:
    """Configure the process-wide loguru sink.

    Args:
        level: Verbosity preset ("minimal", "verbose" or "debug")
    """
    _ensure_notice_level()
    min_level = PRESETS.get(level, PRESETS["verbose"])

    logger.remove()
    logger.configure(patcher=_short_level)
    logger.add(sys.stderr, level=min_level, format=FORMAT, backtrace=False, diagnose=False)

    # Library noise stays at WARNING unless debugging
    library_level = logging.DEBUG if level == "debug" else logging.WARNING
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("discord", "discord.voice_state", "discord.player", "discord.gateway"):
        logging.getLogger(name).setLevel(library_level)


def custom_exception_handler(loop, context) -> None:
    """Asyncio exception handler that drops cosmetic aiohttp shutdown warnings.

    Suppresses only "Unclosed client session" and "Unclosed connector";
    everything else is logged with its traceback.
    """
    message = context.get("message", "")
    if message in NOISY_LOOP_MESSAGES:
        return

    exception = context.get("exception")
    if exception is not None:
        logger.opt(exception=exception).error(f"unhandled error in event loop: {message}")
    else:
        logger.error(f"event loop error: {message}")


_ensure_notice_level()
