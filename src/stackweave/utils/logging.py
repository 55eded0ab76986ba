"""Logging infrastructure with structured JSON logging."""

import logging
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


STRUCTURED_FIELDS = ('stack', 'resource_id', 'resource_type', 'operation', 'duration')


class JSONFormatter(logging.Formatter):
    """Custom formatter that outputs logs as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for field_name in STRUCTURED_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console.

        Args:
            record: The log record to format

        Returns:
            Formatted log string with colors
        """
        color = self.COLORS.get(record.levelname, '')
        reset = self.RESET

        timestamp = datetime.utcnow().strftime('%H:%M:%S')
        level = f"{color}{record.levelname:8}{reset}"
        message = record.getMessage()

        if hasattr(record, 'resource_id'):
            message = f"[{record.resource_id}] {message}"

        return f"{timestamp} {level} {message}"


def setup_logging(log_level: str = 'info', log_dir: Optional[str] = '.stackweave/logs') -> None:
    """Setup logging infrastructure.

    Args:
        log_level: Logging level (debug, info, warning, error)
        log_dir: Directory for JSON-lines log files, or None to log to console only
    """
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_dir else level)
    root_logger.handlers.clear()

    # Console goes to stderr so command output on stdout stays parseable
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / f"stackweave-{datetime.utcnow().strftime('%Y%m%d')}.jsonl"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)  # Always log debug to file
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Reduce noise from boto3 and other libraries
    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Name of the logger (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


class ResourceLogAdapter(logging.LoggerAdapter):
    """Adapter that stamps every record with resource fields.

    Fields are bound per adapter, so worker threads can each log for
    their own resource.
    """

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get('extra') or {})
        kwargs['extra'] = extra
        return msg, kwargs


def resource_logger(logger: logging.Logger, **fields: Any) -> ResourceLogAdapter:
    """Bind structured fields (resource_id, resource_type, ...) to a logger."""
    return ResourceLogAdapter(logger, fields)
