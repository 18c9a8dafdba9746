from __future__ import annotations

import logging
import os

from clinic_authz.infra.tenant import get_organization_id, get_user_id

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] [org=%(organization_id)s user=%(user_id)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.organization_id = get_organization_id()
        record.user_id = get_user_id()
        return True


def configure_logging(level: str | None = None) -> logging.Logger:
    """Attach a console handler to the package logger once.

    Modules log through `logging.getLogger(__name__)`, so everything under
    `clinic_authz` inherits this handler and level. Each line carries the
    organization and user of the request being served, or None outside one.
    """
    logger = logging.getLogger("clinic_authz")
    level_upper = (level or LOG_LEVEL).upper()
    if not hasattr(logging, level_upper):
        raise ValueError(
            f"Invalid log level: {level_upper}. Must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL"
        )
    logger.setLevel(getattr(logging, level_upper))

    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)
    return logger
