"""Structured logging configuration using structlog.

Provides JSON-structured logging in production and human-readable colored
output in development. Deal and milestone identifiers are bound as context
variables by the services so every ledger round trip of a funding or release
run can be correlated.

Secrets (condition fulfillments, wallet seeds) are never passed to a logger.

Usage:
    from trade_settlement.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger()
    logger.info("deal.created", deal_reference="DEAL-2026-0001", amount="500.00")
"""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Configure structlog with shared processors.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: If True, output JSON (for production). If False, colored console.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    # xrpl-py's websocket transport is chatty at DEBUG
    for noisy_logger in ("sqlalchemy.engine", "websockets", "aiosqlite"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def bind_deal_context(deal_id: str, deal_reference: str | None = None) -> None:
    """Bind the deal being processed to every log entry of the current task."""
    structlog.contextvars.bind_contextvars(deal_id=deal_id)
    if deal_reference:
        structlog.contextvars.bind_contextvars(deal_reference=deal_reference)


def clear_deal_context() -> None:
    structlog.contextvars.unbind_contextvars("deal_id", "deal_reference")


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Optional logger name. If None, uses the calling module's name.

    Returns:
        A bound structlog logger with context variable support.
    """
    return structlog.get_logger(name)
