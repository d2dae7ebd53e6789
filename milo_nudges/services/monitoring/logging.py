"""
Structured JSON Logging
Configures stdlib logging with a JSON formatter and routes structlog through it
"""

import logging
import sys
import os

import structlog
from pythonjsonlogger import jsonlogger


class NudgeJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that tags every record with service and environment.

    Extends python-json-logger so log aggregation can filter the repository
    layer's output from the host application's.
    """

    def add_fields(self, log_record, record, message_dict):
        """
        Add custom fields to log record.

        Args:
            log_record: Dictionary to be serialized to JSON
            record: Standard logging.LogRecord object
            message_dict: Additional fields from logger call
        """
        super().add_fields(log_record, record, message_dict)

        log_record['service'] = 'milo-nudges'
        log_record['environment'] = os.getenv('MILO_ENVIRONMENT', 'development')


def configure_structlog() -> None:
    """
    Configure structlog to render JSON events through stdlib logging.

    Events carry an ISO timestamp and the log level; the final line is
    emitted by whatever handler setup_logging() installed.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_logging(level: str = "INFO") -> logging.Handler:
    """
    Configure structured JSON logging to stdout.

    Sets up the root logger with NudgeJsonFormatter and a stdout
    StreamHandler, then points structlog at it.

    Args:
        level: Root log level name

    Returns:
        logging.Handler: The configured handler (for testing)
    """
    handler = logging.StreamHandler(sys.stdout)

    formatter = NudgeJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s',
        rename_fields={
            'timestamp': 'asctime',
            'level': 'levelname'
        }
    )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    configure_structlog()

    return handler
