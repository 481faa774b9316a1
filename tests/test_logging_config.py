"""Tests for the application logging setup."""

import logging

from app.core.config import settings
from app.core.logging_config import configure_logging


def test_app_logger_configured_once():
    # app.main already configured logging when the test app was imported
    app_logger = logging.getLogger("app")
    handlers = list(app_logger.handlers)
    assert len(handlers) == 1
    assert app_logger.level == logging.getLevelName(settings.LOG_LEVEL.upper())

    configure_logging("debug")
    assert app_logger.handlers == handlers
    assert app_logger.level == logging.getLevelName(settings.LOG_LEVEL.upper())


def test_service_loggers_inherit_app_level():
    configure_logging()
    logger = logging.getLogger("app.services.import_executor")
    assert logger.getEffectiveLevel() == logging.getLogger("app").level
