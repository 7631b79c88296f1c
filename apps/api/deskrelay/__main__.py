"""Run the relay with uvicorn: ``python -m deskrelay``."""
from __future__ import annotations

import logging

import uvicorn

from .core.config import settings

logger = logging.getLogger(__name__)


def main() -> None:
    logger.info("Starting desk relay on %s:%s", settings.host, settings.port)
    uvicorn.run(
        "deskrelay.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
