"""
Structured logging setup for the inbox auto-reply engine.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_job_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_job_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Merge contextvars bound by the scheduler (tick id, tenant id) into the entry."""
    return structlog.contextvars.merge_contextvars(logger, method_name, event_dict)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_thread_transition(
    tenant_id: str, thread_id: str, status: str, reason: str | None = None, **fields: Any
):
    """Log a thread state transition with consistent fields."""
    logger = get_logger("auto_reply.transitions")

    log_data = {
        "tenant_id": tenant_id,
        "thread_id": thread_id,
        "status": status,
        "event_type": "thread_transition",
        **fields,
    }

    if reason:
        log_data["reason"] = reason

    if status == "failed":
        logger.warning("Thread marked failed", **log_data)
    else:
        logger.info("Thread state recorded", **log_data)
