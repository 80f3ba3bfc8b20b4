"""Logfire cloud observability initialization and instrumentation."""

import logging

import logfire
from fastapi import FastAPI

from stagecoach import __version__
from stagecoach.config import Settings

logger = logging.getLogger(__name__)


def initialize_logfire(settings: Settings, app: FastAPI | None = None) -> bool:
    """
    Initialize Logfire when a token is configured.

    Instruments:
    - FastAPI request handling (when an app is given)
    - Python logging (bridges to Logfire)

    Args:
        settings: Application settings containing the Logfire token
        app: FastAPI application to instrument

    Returns:
        True if Logfire was configured. Failures are logged, never raised.
    """
    if not settings.logfire_token:
        logger.info("Logfire token not set - observability disabled")
        return False

    try:
        logfire.configure(
            token=settings.logfire_token,
            service_name="stagecoach",
            service_version=__version__,
        )

        if app is not None:
            logfire.instrument_fastapi(app)

        root_logger = logging.getLogger()
        root_logger.addHandler(logfire.LogfireLoggingHandler())

        logger.info("Logfire cloud tracking initialized")
        return True

    except Exception as e:
        logger.warning(f"Failed to initialize Logfire: {e}")
        return False
