"""Startup-time helpers for safe config logging."""

from vehiclepay.common.config import CommonSettings
from vehiclepay.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_config(config: CommonSettings, fields: list[str]) -> dict:
    """Return the selected settings with secret-like values masked."""

    values = {}
    for field in fields:
        value = getattr(config, field, None)
        if value in (None, ""):
            values[field] = "<unset>"
        elif any(marker in field for marker in SECRET_MARKERS):
            values[field] = "<redacted>"
        else:
            values[field] = value
    return values


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    snapshot = {"service": config.service_name, **redacted_config(config, fields)}
    logger.info("startup_config=%s", snapshot)
