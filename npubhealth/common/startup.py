"""Startup-time helpers for safe config logging."""

from npubhealth.common.config import CommonSettings, settings
from npubhealth.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token")


def redacted_settings(config: CommonSettings, fields: list[str] | None = None) -> dict[str, object]:
    """Settings as a plain dict with secret-like values masked."""

    values = config.model_dump()
    redacted = {}
    for name in fields or sorted(values):
        value = values.get(name)
        if any(marker in name for marker in SECRET_MARKERS):
            value = "<redacted>" if value else "<unset>"
        redacted[name] = value
    return redacted


def log_startup_config(
    service_name: str,
    config: CommonSettings | None = None,
    fields: list[str] | None = None,
) -> dict[str, object]:
    """Log the effective configuration once at process start."""

    snapshot = {"service": service_name, **redacted_settings(config or settings, fields)}
    logger.info("startup_config=%s", snapshot)
    return snapshot
