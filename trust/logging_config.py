"""
Structured logging for the trust accounting core.

Operational logs only. The compliance audit trail lives in the store and is
written by ``trust.audit.AuditRecorder``.
"""

import logging
import sys

import structlog

_configured = False


def configure_logging(level: str | int = "INFO", json: bool = True) -> None:
    """Configure structlog and the stdlib root handler. Safe to call repeatedly."""
    global _configured

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    if not _configured:
        from .config import get_settings

        settings = get_settings()
        configure_logging(settings.log_level, settings.log_json)
    return structlog.get_logger(name)
