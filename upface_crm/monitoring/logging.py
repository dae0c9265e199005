"""
Structured logging setup.

structlog renders through the standard library so third-party log records
(werkzeug, pymongo) share the same handler. Production renders JSON lines;
development renders plain console output. Request-scoped values such as
``request_id`` are merged from ``structlog.contextvars``.
"""

import logging
import logging.config
from typing import Optional

import structlog
from flask import Flask


def configure_logging(level: str = 'INFO', log_format: str = 'json') -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt='iso', utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if log_format == 'console':
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {'plain': {'format': '%(message)s'}},
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'plain',
                'stream': 'ext://sys.stdout',
            },
        },
        'root': {'handlers': ['console'], 'level': level.upper()},
    })


def init_logging(app: Flask, level: Optional[str] = None,
                 log_format: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Configure logging from the application config and return the app logger."""
    configure_logging(
        level=level or app.config.get('LOG_LEVEL', 'INFO'),
        log_format=log_format or app.config.get('LOG_FORMAT', 'json'),
    )
    logger = structlog.get_logger(app.import_name)
    logger.info(
        "Structured logging initialized",
        log_level=app.config.get('LOG_LEVEL'),
        log_format=app.config.get('LOG_FORMAT'),
    )
    return logger
