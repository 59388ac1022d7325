"""Logging utilities for PortMail.

Modules obtain their logger through :func:`get_logger`. Handlers, level and
format are applied once by the process entry point (the ASGI server module
or the CLI) through :func:`configure_logging`, which avoids duplicate
handlers when both import the package.

Example:
    Typical usage in a module::

        from portmail.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.info("Sweep completed")
"""

import logging
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "PortMail") -> logging.Logger:
    """Retrieve a logger instance.

    Args:
        name: The logger name. Defaults to "PortMail".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger for the current process.

    Args:
        level: Level name such as ``"DEBUG"``. When omitted the
            ``PM_LOG_LEVEL`` environment variable is used, then ``INFO``.
    """
    level_name = (level or os.getenv("PM_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,  # replace handlers installed by uvicorn or earlier calls
    )
