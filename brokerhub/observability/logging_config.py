"""
Structured logging configuration for BrokerHub.

Provides:
- JSON formatted logs for production
- Colored text logs for development
- Optional rotating file handler
"""

import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from pythonjsonlogger.json import JsonFormatter


class CustomJsonFormatter(JsonFormatter):
    """JSON formatter that adds service and execution context fields."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['environment'] = os.getenv("ENVIRONMENT", os.getenv("APP_ENV", "development"))
        log_record['service'] = 'brokerhub'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        # Execution context, attached via `extra=`
        for key in ('signal_id', 'user_id', 'broker_id'):
            if hasattr(record, key):
                log_record[key] = getattr(record, key)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for development console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        # Color a copy so other handlers see the plain level name
        colored = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(colored.levelname, self.RESET)
        colored.levelname = f"{color}{colored.levelname}{self.RESET}"
        return super().format(colored)


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file_enabled: Optional[bool] = None,
    log_file_path: Optional[str] = None,
) -> None:
    """Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'text')
        log_file_enabled: Whether to enable file logging
        log_file_path: Path to log file
    """
    log_level = log_level or os.getenv("LOG_LEVEL", "INFO")
    log_format = log_format or os.getenv("LOG_FORMAT", "json")
    environment = os.getenv("ENVIRONMENT", os.getenv("APP_ENV", "development"))

    if log_file_enabled is None:
        log_file_enabled = os.getenv("LOG_FILE_ENABLED", "false").lower() == "true"
    if log_file_path is None:
        log_file_path = os.getenv("LOG_FILE_PATH", "/var/log/brokerhub/execution.log")

    level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if log_format == "json":
        formatter = CustomJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s')
    elif environment in ("development", "dev"):
        formatter = ColoredFormatter(
            '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file_enabled and environment not in ("development", "dev"):
        log_dir = os.path.dirname(log_file_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file_path,
            maxBytes=int(os.getenv("LOG_FILE_MAX_BYTES", 10485760)),  # 10MB
            backupCount=int(os.getenv("LOG_FILE_BACKUP_COUNT", 5)),
        )
        file_handler.setLevel(level)
        # File logs are always JSON
        file_handler.setFormatter(CustomJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s'))
        logger.addHandler(file_handler)

    # Silence noisy libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logger.info("Logging configured", extra={
        "log_level": log_level,
        "log_format": log_format,
        "environment": environment,
    })


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)

