"""clinicsync API service entry point.

This module provides the application instance for ASGI servers (uvicorn)
and a run() function for direct execution.
"""

import logging

from clinicsync.api import create_app

logger = logging.getLogger(__name__)

# What uvicorn references: clinicsync.api.main:app
app = create_app()


def run() -> None:
    """Run the API server using uvicorn.

    Called by the clinicsync-api console script defined in pyproject.toml.
    """
    import uvicorn

    from clinicsync.core.settings import get_settings

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info("Starting clinicsync API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "clinicsync.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
