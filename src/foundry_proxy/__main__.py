"""Entry point for running the Foundry proxy."""

import logging

import uvicorn

from .config import get_settings
from .main import configure_logging

logger = logging.getLogger(__name__)


def main():
    """Run the Foundry proxy."""
    settings = get_settings()
    configure_logging(settings.debug)

    logger.info(f"Starting Foundry proxy on {settings.app_host}:{settings.app_port}")

    uvicorn.run(
        "foundry_proxy.main:create_app",
        factory=True,
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
