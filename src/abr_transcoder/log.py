"""Process-wide logging setup."""

import logging
import sys
from typing import Optional

from .models import LoggingConfig

_HANDLER_NAME = "abr_transcoder"


def configure_logging(config: Optional[LoggingConfig] = None, level: Optional[str] = None) -> None:
    """Install a single stderr handler on the root logger.

    Safe to call more than once; the handler is replaced, not duplicated.
    """
    config = config or LoggingConfig()
    root = logging.getLogger()

    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(config.format))
    root.addHandler(handler)
    root.setLevel((level or config.level).upper())

    # boto and redis are chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
