"""
Logging setup for the API process.

Modules log through ``logging.getLogger(__name__)``. Import progress and
row faults come from ``app.services``; uvicorn keeps its own access log.
"""

import logging
from logging.config import dictConfig

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Send ``app.*`` records to stderr at ``level`` (default INFO). Safe to call twice."""
    if logging.getLogger("app").handlers:
        return

    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"plain": {"format": LOG_FORMAT}},
        "handlers": {
            "stderr": {"class": "logging.StreamHandler", "formatter": "plain"},
        },
        "loggers": {
            "app": {
                "handlers": ["stderr"],
                "level": (level or "INFO").upper(),
            },
        },
    })
