# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
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

"""Loguru setup: 4-char level tags, NOTICE level, stdlib interception.

Levels map from the user-facing setting:
    minimal -> NOTICE (startup banner, joins/leaves, warnings, failures)
    verbose -> INFO   (plus now playing, queue events)
    debug   -> DEBUG  (everything, including cache hits and callbacks)
"""

import inspect
import logging
import sys

from loguru import logger

NOTICE_LEVEL = "NOTICE"
NOTICE_NO = 25  # Between INFO (20) and WARNING (30)

# CAUTION: changing these breaks alignment for anyone grepping logs
LEVEL_TAGS = {
    "TRACE": "TRCE",
    "DEBUG": "DBUG",
    "INFO": "INFO",
    "SUCCESS": "INFO",
    NOTICE_LEVEL: "NOTE",
    "WARNING": "WARN",
    "ERROR": "FAIL",
    "CRITICAL": "CRIT",
}

SETTING_TO_LEVEL = {
    "minimal": NOTICE_LEVEL,
    "verbose": "INFO",
    "debug": "DEBUG",
}

LIBRARY_LOGGERS = ("discord", "discord.player", "discord.voice_state", "discord.gateway", "yt_dlp")


class InterceptHandler(logging.Handler):
    """Route stdlib logging records (discord.py, yt-dlp) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller that issued the logged message
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _format(record) -> str:
    tag = LEVEL_TAGS.get(record["level"].name, record["level"].name[:4])
    guild = record["extra"].get("guild")
    scope = f"guild {guild} | " if guild is not None else ""
    return "[{time:YYYY-MM-DD HH:mm:ss}] [" + tag + "] {name}: " + scope + "{message}\n{exception}"


def setup_logging(level: str = "verbose", suppress_library_logs: bool = True) -> str:
    """Configure loguru sinks and stdlib interception. Returns the loguru level used."""
    try:
        logger.level(NOTICE_LEVEL)
    except ValueError:
        logger.level(NOTICE_LEVEL, no=NOTICE_NO)

    loguru_level = SETTING_TO_LEVEL.get(str(level).lower(), "INFO")

    logger.remove()
    logger.add(sys.stderr, level=loguru_level, format=_format, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    if suppress_library_logs:
        library_level = logging.WARNING
    else:
        library_level = logging.DEBUG if loguru_level == "DEBUG" else logging.INFO
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    return loguru_level
