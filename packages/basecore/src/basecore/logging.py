"""
Logging Setup

Configures the root logger for services: one stream handler, JSON lines by default.
Modules keep using logging.getLogger(__name__) with extra={...} for context.
"""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from basecore.settings import get_settings

VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class ServiceNameFilter(logging.Filter):
    """Stamps every record with the service name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        return True


def setup_logging(
    level: str | None = None,
    fmt: str | None = None,
    service_name: str | None = None,
) -> None:
    """
    Configure root logging for a service.

    Safe to call more than once: existing root handlers are replaced.

    Args:
        level: Log level name (defaults to LOG_LEVEL setting)
        fmt: "json" or "text" (defaults to LOG_FORMAT setting)
        service_name: Service name stamped on records (defaults to SERVICE_NAME)

    Raises:
        ValueError: If the level name is not a standard logging level
    """
    settings = get_settings()
    level_name = (level or settings.LOG_LEVEL).upper()
    if level_name not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level_name}")

    handler = logging.StreamHandler(sys.stdout)
    if (fmt or settings.LOG_FORMAT) == "json":
        handler.setFormatter(
            JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s %(service)s",
                rename_fields={"levelname": "level", "name": "logger"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    handler.addFilter(ServiceNameFilter(service_name or settings.SERVICE_NAME))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level_name)

    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
