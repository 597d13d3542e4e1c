"""Process-wide settings, loaded from the environment once.

    from clinicsync.core.settings import get_settings

    slots = get_settings().jobs.concurrency

Tests that change the environment call clear_settings_cache() afterwards.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from clinicsync.core.config import ConfigValidationError, Settings, validate_settings

logger = logging.getLogger(__name__)


def _describe(error: ValidationError) -> str:
    return "\n".join(
        f"  - {'.'.join(map(str, item['loc']))}: {item['msg']}" for item in error.errors()
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and validate settings on first use.

    A process cannot do anything useful with a broken configuration, so
    problems are logged and turned into SystemExit.

    Raises:
        SystemExit: If the environment does not describe valid settings.
    """
    try:
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)
    except ValidationError as e:
        logger.critical("Invalid configuration:\n%s", _describe(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical("Invalid configuration for %s: %s", e.field or "settings", e.message)
        raise SystemExit(1) from e

    logger.info(
        "Settings loaded (environment=%s, workflow graph=%s)",
        settings.environment.value,
        settings.workflow.graph.value,
    )
    return settings


def clear_settings_cache() -> None:
    """Forget the cached settings so the next get_settings() reloads them."""
    get_settings.cache_clear()


def get_settings_safe() -> Settings | None:
    """Like get_settings(), but None instead of SystemExit."""
    try:
        return get_settings()
    except SystemExit:
        return None
