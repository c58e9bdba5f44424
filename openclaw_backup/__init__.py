import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

__version__ = '2.0.0'


def configure_logging(log_dir: Optional[str] = None, debug: bool = False) -> logging.Logger:
    """Configure logging for the command line tool"""

    from openclaw_backup.config import Config

    # Create logs directory if it doesn't exist
    log_dir = log_dir or Config.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)

    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler; user-facing output goes through click, so only warnings
    # reach the terminal unless debugging
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level if debug else logging.WARNING)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'openclaw-backup.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    logger = logging.getLogger('openclaw_backup')
    logger.setLevel(log_level)
    logger.handlers.clear()
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    logger.propagate = False

    logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger
