"""Logging configuration."""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from signal_engine.core.config import logging_config


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    """Configure structlog JSON output to stdout and a log file."""
    level_name = (level or logging_config.log_level).upper()
    log_level = getattr(logging, level_name)
    log_path = Path(log_file or logging_config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    if not any(
        isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_path.resolve()
        for h in root_logger.handlers
    ):
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(log_level)
        root_logger.addHandler(file_handler)
