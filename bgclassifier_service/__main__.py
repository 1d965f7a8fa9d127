"""
Process entry point: `python -m bgclassifier_service`.

Refuses to start without the required configuration and treats any uncaught
fault as fatal, leaving restarts to the process supervisor.
"""

from __future__ import annotations

import logging
import os
import sys
import threading

import uvicorn

from . import config
from .errors import ConfigError

logger = logging.getLogger("bgclassifier_service")


def _fatal(exc_type, exc_value, exc_tb) -> None:
    logger.critical("Uncaught exception, shutting down", exc_info=(exc_type, exc_value, exc_tb))
    logging.shutdown()
    os._exit(1)


def _fatal_thread(args: threading.ExceptHookArgs) -> None:
    _fatal(args.exc_type, args.exc_value, args.exc_traceback)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    try:
        settings = config.get_settings()
    except ConfigError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    sys.excepthook = _fatal
    threading.excepthook = _fatal_thread

    from .api import app

    logger.info("ML Background Classifier service listening on port %d", settings.port)
    logger.info("Health check: http://localhost:%d/health", settings.port)
    logger.info("Predict endpoint: POST http://localhost:%d/predict", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
