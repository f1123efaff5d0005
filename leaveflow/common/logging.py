"""Logging configuration for the leaveflow service."""

import logging
import sys

from leaveflow.config import settings

# Authorization refusals go here so they can be routed separately
SECURITY_LOGGER_NAME = "leaveflow.security"


def setup_logging() -> None:
    """Configure the root logger from ``settings.LOG_LEVEL``."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Quieter third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured: level=%s, env=%s",
        settings.LOG_LEVEL,
        settings.ENVIRONMENT,
    )


def get_security_logger() -> logging.Logger:
    return logging.getLogger(SECURITY_LOGGER_NAME)
