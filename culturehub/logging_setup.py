"""
culturehub/logging_setup.py
-----------------------------------------------------------------------------
Logging configuration for the server process.

Every module logs through ``logging.getLogger(__name__)``; this module only
decides where those records go.  Two files are written under the configured
log directory:

- ``error.log``    – ERROR and above.
- ``combined.log`` – everything at or above ``LOG_LEVEL``.

Outside production a console handler is added as well so developers see
request and cleanup activity in the terminal running uvicorn.
"""

from __future__ import annotations

import logging

from culturehub.config import Settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Handlers installed by a previous call are tagged so that re-configuration
# (one call per ``create_app``) replaces them instead of duplicating output.
_HANDLER_TAG = "_culturehub_handler"


def configure_logging(settings: Settings) -> logging.Logger:
    """
    Attach file (and, in development, console) handlers to the package logger.

    Parameters
    ----------
    settings : Active settings; ``log_dir``, ``log_level`` and
               ``environment`` are read.

    Returns
    -------
    logging.Logger : The configured ``culturehub`` logger.
    """
    logger = logging.getLogger("culturehub")
    logger.setLevel(settings.log_level)

    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            logger.removeHandler(handler)
            handler.close()

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(_FORMAT)

    error_handler = logging.FileHandler(settings.log_dir / "error.log", encoding="utf-8")
    error_handler.setLevel(logging.ERROR)
    combined_handler = logging.FileHandler(settings.log_dir / "combined.log", encoding="utf-8")

    handlers: list[logging.Handler] = [error_handler, combined_handler]
    if not settings.is_production:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_TAG, True)
        logger.addHandler(handler)

    return logger
