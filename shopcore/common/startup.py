"""Startup-time helpers for safe config logging."""

from pydantic_settings import BaseSettings

from shopcore.common.logging import logger

_SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_settings(config: BaseSettings, fields: list[str] | None = None) -> dict:
    """Selected settings with secret-looking fields masked."""

    values = config.model_dump()
    redacted = {}
    for name in fields or sorted(values):
        value = values.get(name)
        if any(marker in name for marker in _SECRET_MARKERS):
            redacted[name] = "<redacted>" if value else "<unset>"
        else:
            redacted[name] = value
    return redacted


def log_startup_config(config: BaseSettings, fields: list[str] | None = None) -> None:
    """Log the effective configuration once at boot for quick troubleshooting."""

    logger.info("startup_config=%s", {"service": config.service_name, **redacted_settings(config, fields)})
