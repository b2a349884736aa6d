"""
Logging bootstrap.
Console output always, plus an optional log file.
"""

import logging
from typing import Optional

from anomaly_flow.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure root logging for the service.

    Args:
        level: Log level name (defaults to settings.log_level)
        log_file: Optional path for a file handler (defaults to settings.log_file)
    """
    level = level or settings.log_level
    log_file = log_file or settings.log_file

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

    # Third-party clients are chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
