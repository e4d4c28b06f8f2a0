"""
Structured logging configuration using structlog.

Dispatcher logs are JSON lines tagged with the service and environment.
Each delivery and probe would otherwise also produce an httpx request line,
so chatty library loggers are held at WARNING unless LOG_LEVEL is DEBUG.
"""
import structlog
import logging
import sys

from hookrelay.config import settings

# Libraries that log every outbound request or statement at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def add_service_context(logger, method_name, event_dict):
    """Tag every event with the emitting service."""
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def configure_logging(level: str | None = None):
    """
    Configure structlog for JSON output.

    Called once by the worker and the ops app at startup, never at import,
    so tests can capture log events without a global renderer in the way.
    """
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    # Standard library logging (SQLAlchemy, httpx, uvicorn)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    quiet_level = log_level if log_level <= logging.DEBUG else max(log_level, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_service_context,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


def get_logger(**context):
    """
    Get a logger with context bound, e.g. the loop a message comes from.

    Usage:
        log = get_logger(loop="delivery")
        log.exception("dispatcher_cycle_failed")
    """
    return structlog.get_logger().bind(**context)
