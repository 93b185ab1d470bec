"""
Logging Configuration
=====================

Structured logging for workers and job lifecycle events.

Standard library loggers keep working unchanged; structlog renders them
together with the structured job events emitted by the job ledger.
"""

import logging

import structlog

from socialvault.core.config import settings


def configure_logging(level: str | None = None, *, json_output: bool | None = None) -> None:
    """Configure stdlib logging and structlog processors."""
    log_level = (level or settings.LOG_LEVEL or "INFO").upper()
    if json_output is None:
        json_output = settings.is_production

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

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
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s", level=log_level)
    logging.getLogger().setLevel(log_level)


def get_job_event_logger():
    """Structured logger for backup job state transitions."""
    return structlog.get_logger("backup_jobs")
