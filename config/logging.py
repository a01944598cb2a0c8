"""Loguru sink configuration for controller processes."""

from __future__ import annotations

import sys

from loguru import logger

from config.settings import Settings


def configure_logging(settings: Settings) -> None:
    """Replace the default stderr sink with one honoring level and format settings."""

    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        serialize=settings.log_json,
        backtrace=False,
        diagnose=False,
    )
