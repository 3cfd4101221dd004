"""
Logging configuration with optional GELF support.
Extends standard Python logging so records carry the municipality, permit
and user a request is acting on.
"""

import logging
import json
import socket
from typing import Optional, Dict
from contextvars import ContextVar

# Context variables for request data
current_user_id: ContextVar[Optional[str]] = ContextVar('current_user_id', default=None)
current_municipality_id: ContextVar[Optional[str]] = ContextVar('current_municipality_id', default=None)
current_permit_id: ContextVar[Optional[str]] = ContextVar('current_permit_id', default=None)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class GELFFormatter(logging.Formatter):
    """Formatter that creates GELF-compatible JSON messages with request context."""

    def __init__(self, container_name: str = None):
        super().__init__()
        self.hostname = socket.gethostname()
        self.container_name = container_name

    def format(self, record):
        gelf_message = {
            "version": "1.1",
            "host": self.hostname,
            "short_message": record.getMessage(),
            "timestamp": record.created,
            "level": self._level_to_gelf(record.levelno),
            "facility": "permitflow",
            "_logger": record.name,
            "_filename": record.filename,
            "_line": record.lineno,
        }

        if self.container_name:
            gelf_message["container_name"] = self.container_name

        for key, value in get_request_context().items():
            if value:
                gelf_message[f"_{key}"] = value

        # Fields passed via logger.info(..., permit_number=...) land on the record
        for key in getattr(record, "context_keys", ()):
            gelf_message[f"_{key}"] = str(getattr(record, key))

        if record.exc_info:
            gelf_message["_exception"] = self.formatException(record.exc_info)

        return json.dumps(gelf_message)

    def _level_to_gelf(self, level):
        """Convert Python log level to GELF level."""
        mapping = {
            logging.DEBUG: 7,
            logging.INFO: 6,
            logging.WARNING: 4,
            logging.ERROR: 3,
            logging.CRITICAL: 2
        }
        return mapping.get(level, 6)


class GELFHandler(logging.Handler):
    """Handler that sends GELF messages to Graylog via UDP."""

    def __init__(self, graylog_host: str, graylog_port: int = 12201, container_name: str = None):
        super().__init__()
        self.graylog_host = graylog_host
        self.graylog_port = graylog_port
        self.setFormatter(GELFFormatter(container_name))

    def emit(self, record):
        try:
            gelf_json = self.format(record)
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.sendto(gelf_json.encode('utf-8'), (self.graylog_host, self.graylog_port))
            finally:
                sock.close()
        except Exception:
            self.handleError(record)


def set_request_context(
    user_id: str = None,
    municipality_id: str = None,
    permit_id: str = None
):
    """Set request context for subsequent log messages."""
    if user_id is not None:
        current_user_id.set(user_id)
    if municipality_id is not None:
        current_municipality_id.set(municipality_id)
    if permit_id is not None:
        current_permit_id.set(permit_id)


def clear_request_context():
    current_user_id.set(None)
    current_municipality_id.set(None)
    current_permit_id.set(None)


def get_request_context() -> Dict[str, Optional[str]]:
    return {
        "user_id": current_user_id.get(),
        "municipality_id": current_municipality_id.get(),
        "permit_id": current_permit_id.get()
    }


class PermitContextLogger:
    """Wrapper around a standard logger that accepts structured fields as keyword arguments."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level, message, exc_info=False, **fields):
        extra = dict(fields)
        extra["context_keys"] = tuple(fields.keys())
        if fields:
            message = f"{message} " + " ".join(f"{k}={v}" for k, v in fields.items())
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message, **fields):
        self._log(logging.DEBUG, message, **fields)

    def info(self, message, **fields):
        self._log(logging.INFO, message, **fields)

    def warning(self, message, exc_info=False, **fields):
        self._log(logging.WARNING, message, exc_info=exc_info, **fields)

    def error(self, message, exc_info=False, **fields):
        self._log(logging.ERROR, message, exc_info=exc_info, **fields)


def setup_logging(
    level: str = "INFO",
    graylog_host: Optional[str] = None,
    graylog_port: int = 12201,
    container_name: str = None
):
    """Configure the root logger: console output always, GELF when a Graylog host is given."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(isinstance(h, logging.StreamHandler) for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(console_handler)

    if graylog_host and not any(isinstance(h, GELFHandler) for h in root_logger.handlers):
        gelf_handler = GELFHandler(graylog_host, graylog_port, container_name)
        gelf_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(gelf_handler)


def get_permit_logger(name: str) -> PermitContextLogger:
    """Get a context-aware logger instance."""
    return PermitContextLogger(name)
