"""
ActGuard Logging Configuration
Rich console output plus rotating JSON files, with credential redaction
for structured context attached through LoggerMixin.log_with_context.
"""

import json
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

from actguard.core.config import settings


# Context keys whose values must never reach a log sink
SENSITIVE_KEYS = frozenset({
    "password",
    "new_password",
    "current_password",
    "password_hash",
    "token",
    "session_token",
    "reset_token",
    "secret",
    "totp_secret",
    "mfa_code",
    "code",
    "backup_codes",
    "encryption_key",
})
REDACTED = "[REDACTED]"

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def redact(value: Any) -> Any:
    """Copy of `value` with sensitive keys masked at any depth"""
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record; `extra_data` is redacted and nested under "extra"
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_entry["extra"] = redact(record.extra_data)

        # datetimes and enums in security context
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ActGuardLogger:
    """
    Process-wide logging setup, applied once from get_logger()
    """

    def __init__(self, log_dir: Optional[Path] = None):
        # CLI stdout carries only command output (keys, exports)
        self.console = Console(stderr=True)
        self.log_dir = log_dir or settings.LOG_DIR

    def _file_handler(self, filename: str, level: int) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            self.log_dir / filename,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter())
        return handler

    def setup_logging(self) -> None:
        level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        console_handler = RichHandler(
            console=self.console,
            rich_tracebacks=True,
            show_path=settings.DEBUG,
            show_time=True,
        )
        console_handler.setLevel(level)
        root_logger.addHandler(console_handler)

        if settings.LOG_TO_FILE:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            root_logger.addHandler(self._file_handler("actguard.log", logging.INFO))
            root_logger.addHandler(self._file_handler("error.log", logging.ERROR))

        # SQL echo would print bound parameters, hashes included
        logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
        logging.getLogger("actguard").setLevel(level)


_logger_instance: Optional[ActGuardLogger] = None


def get_logger(name: str) -> logging.Logger:
    """
    Get a standard logger, configuring logging on first use
    """
    global _logger_instance

    if _logger_instance is None:
        _logger_instance = ActGuardLogger()
        _logger_instance.setup_logging()

    return logging.getLogger(name)


class LoggerMixin:
    """
    Gives service classes a `self.logger` named after their module and class
    """

    @property
    def logger(self) -> logging.Logger:
        return get_logger(self.__class__.__module__ + "." + self.__class__.__name__)

    def log_with_context(
        self,
        level: int,
        message: str,
        extra_data: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log with structured context; sensitive keys are masked by JSONFormatter
        """
        if not self.logger.isEnabledFor(level):
            return

        record = self.logger.makeRecord(
            name=self.logger.name,
            level=level,
            fn="",
            lno=0,
            msg=message,
            args=(),
            exc_info=None,
        )

        if extra_data:
            record.extra_data = extra_data

        self.logger.handle(record)
