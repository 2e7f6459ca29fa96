"""Logging configuration with per-flow correlation IDs and key redaction.

Each remote flow (detection, chat, suggestion, transform, preview) runs as its
own asyncio task, so the correlation ID lives in a ContextVar and follows the
task across awaits without any thread-local bookkeeping.
"""
import json
import logging
import logging.handlers
import re
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

_STANDARD_RECORD_KEYS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'exc_info', 'exc_text',
    'stack_info', 'correlation_id', 'taskName', 'message', 'asctime',
}


class CorrelationIDFilter(logging.Filter):
    """Filter to add correlation IDs to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or '-'
        return True


class SecuritySafeFormatter(logging.Formatter):
    """Formatter that redacts API keys and tokens from log messages."""

    SENSITIVE_PATTERNS = [
        (re.compile(r'(?i)(api[_-]?key["\s]*[:=]["\s]*)[a-zA-Z0-9_-]+'), r'\1[REDACTED]'),
        (re.compile(r'(?i)(token["\s]*[:=]["\s]*)[a-zA-Z0-9_-]+'), r'\1[REDACTED]'),
        (re.compile(r'AIza[0-9A-Za-z_-]{35}'), '[REDACTED]'),
        (re.compile(r'(?i)([?&]key=)[^&\s]+'), r'\1[REDACTED]'),
    ]

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        return self.redact(formatted)

    @classmethod
    def redact(cls, text: str) -> str:
        for pattern, replacement in cls.SENSITIVE_PATTERNS:
            text = pattern.sub(replacement, text)
        return text


class HumanReadableFormatter(SecuritySafeFormatter):
    """Human-readable formatter for console output."""

    def __init__(self):
        super().__init__('%(asctime)s - %(name)s - %(levelname)s - %(correlation_id)s - %(message)s')


class StructuredFormatter(SecuritySafeFormatter):
    """Structured JSON formatter for log files."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', '-'),
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info),
            }

        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_RECORD_KEYS}
        if extra:
            log_entry['extra'] = extra

        return self.redact(json.dumps(log_entry, default=str))


def setup_logging(log_level: str = 'INFO',
                  log_file: Optional[Union[str, Path]] = None,
                  structured: bool = False,
                  max_file_size: int = 10 * 1024 * 1024,
                  backup_count: int = 5) -> None:
    """Configure the root logger with console and optional rotating file output.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Path of the log file, or None for console only
        structured: Use JSON records in the log file
        max_file_size: Maximum size of the log file before rotation
        backup_count: Number of rotated files to keep
    """
    numeric_level = getattr(logging, str(log_level).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    correlation_filter = CorrelationIDFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(HumanReadableFormatter())
    console_handler.addFilter(correlation_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(StructuredFormatter() if structured else HumanReadableFormatter())
        file_handler.addFilter(correlation_filter)
        root_logger.addHandler(file_handler)

    # Suppress verbose third-party library logs
    logging.getLogger('PIL').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('google_genai').setLevel(logging.WARNING)

    logging.info(f"Logging configured - Level: {log_level}, File: {log_file or 'disabled'}")


class FlowContext:
    """Context manager tagging every record in a flow with one correlation ID."""

    def __init__(self, flow: str):
        self.flow = flow
        self._token = None

    def __enter__(self) -> str:
        corr_id = f"{self.flow}-{uuid.uuid4().hex[:8]}"
        self._token = correlation_id.set(corr_id)
        return corr_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        correlation_id.reset(self._token)
