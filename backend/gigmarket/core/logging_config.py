"""Structured JSON logging configuration."""

import logging
import sys

from pythonjsonlogger import jsonlogger

from gigmarket.core.config import settings


def setup_logging(component: str = "api") -> None:
    """Send JSON log lines to stdout, tagged with the process ``component``.

    The API and the Celery workers share one format so a log pipeline can
    follow an order across both by its reference.
    """
    formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        static_fields={"component": component},
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "celery.beat"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
