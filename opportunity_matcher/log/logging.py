"""Logging setup for the opportunity matcher.

A single Loguru logger is configured at import time:
  • stdout sink, human readable by default or one JSON object per line
    when ``LOG_JSON=true``
  • Datadog Logs sink when ``DD_API_KEY`` is set (WARNING+ unless
    ``LOG_LEVEL_DATADOG`` says otherwise)
  • standard-library ``logging`` records from psycopg, motor, openai and
    httpx are re-emitted through Loguru

Structured context is passed as keyword arguments and ends up in
``record["extra"]``::

    logger.info("Embedding sync completed", created=3, deleted=1)
"""

from __future__ import annotations

import inspect
import logging
import os
import sys

from datadog_api_client.v2 import ApiClient, Configuration
from datadog_api_client.v2.api.logs_api import LogsApi
from datadog_api_client.v2.model.content_encoding import ContentEncoding
from datadog_api_client.v2.model.http_log import HTTPLog
from datadog_api_client.v2.model.http_log_item import HTTPLogItem
from loguru import logger as loguru_logger

from opportunity_matcher.core.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS Z}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level> | <level>{extra}</level>"
)

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "pymongo", "motor", "psycopg.pool")


class InterceptHandler(logging.Handler):
    """Routes standard-library *logging* calls into Loguru.

    Adapted from the recipe in the Loguru documentation.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = inspect.currentframe(), 0
        while frame:
            filename = frame.f_code.co_filename
            is_logging_internal = filename == logging.__file__
            is_importlib_bootstrap = "importlib" in filename and "_bootstrap" in filename
            if depth > 0 and not (is_logging_internal or is_importlib_bootstrap):
                break
            frame = frame.f_back
            depth += 1

        loguru_logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


class DatadogSink:
    """Loguru sink that submits each record to Datadog Logs over HTTPS.

    The client reads ``DD_SITE`` and ``DD_API_KEY`` from the environment.
    Registered with ``enqueue=True`` so the HTTP call runs off the event loop.
    """

    def __init__(self) -> None:
        self.api_client = ApiClient(Configuration())
        self.api_instance = LogsApi(self.api_client)

    def __call__(self, message) -> None:
        record = message.record
        level = record["level"].name

        attributes = {key: str(value) for key, value in record["extra"].items()}
        if record["exception"] is not None:
            attributes["error.kind"] = str(record["exception"].type.__name__)

        item = HTTPLogItem(
            ddsource="loguru",
            ddtags=f"level:{level},env:{settings.environment}",
            hostname=settings.hostname,
            message=record["message"],
            service=settings.service_name,
            status=level,
            timestamp=str(record["time"].timestamp()),
            logger_name=f"{record['name']}:{record['function']}:{record['line']}",
            **attributes,
        )
        self.api_instance.submit_log(
            content_encoding=ContentEncoding.DEFLATE, body=HTTPLog([item])
        )


def init_logging():
    """Configure Loguru once and return the logger."""
    if getattr(init_logging, "_configured", False):
        return loguru_logger

    loguru_logger.remove()
    if settings.log_json:
        loguru_logger.add(sys.stdout, serialize=True, level=settings.log_level)
    else:
        loguru_logger.add(sys.stdout, format=CONSOLE_FORMAT, level=settings.log_level)

    if os.getenv("DD_API_KEY"):
        loguru_logger.add(DatadogSink(), level=settings.log_level_datadog, enqueue=True)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    init_logging._configured = True  # type: ignore[attr-defined]
    loguru_logger.debug(
        "Logging configured",
        level=settings.log_level,
        json=settings.log_json,
        datadog=bool(os.getenv("DD_API_KEY")),
    )
    return loguru_logger


# The logger instance used throughout the application
logger = init_logging()
