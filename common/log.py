"""Shared logging setup for the RouteLogger services."""

import logging
import os

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


class HealthCheckFilter(logging.Filter):
    """Filter out health check requests from uvicorn access logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Return False to suppress health check log entries."""
        return '/health' not in record.getMessage()


def resolve_level(level: str | int | None = None) -> int:
    """Turn a level name (or the LOG_LEVEL env var) into a logging level.

    Unknown names fall back to INFO rather than failing startup.
    """
    if isinstance(level, int):
        return level
    name = (level or os.environ.get('LOG_LEVEL') or 'INFO').upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: str | int | None = None) -> None:
    """Configure the root logger and quiet uvicorn health check entries."""
    logging.basicConfig(level=resolve_level(level), format=LOG_FORMAT)
    logging.getLogger('routelogger').setLevel(resolve_level(level))
    access_logger = logging.getLogger('uvicorn.access')
    if not any(isinstance(f, HealthCheckFilter) for f in access_logger.filters):
        access_logger.addFilter(HealthCheckFilter())
