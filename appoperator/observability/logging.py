"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys
from typing import Any, cast

import structlog
from structlog.typing import FilteringBoundLogger

_VALID_LEVELS: frozenset[str] = frozenset({"debug", "info", "warning", "error"})


def setup_logging(level: str = "info") -> None:
    """Configure structlog for JSON output to stderr.

    Unknown level names fall back to ``info`` rather than failing; level
    validation belongs to :func:`appoperator.config.load_config`.
    """
    name = level.lower() if level.lower() in _VALID_LEVELS else "info"
    log_level = getattr(logging, name.upper())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **context: Any) -> FilteringBoundLogger:
    """Get a logger bound with a component name and optional extra context.

    Example::

        log = get_logger("controller.reconciler", record="default/web")
    """
    return cast(FilteringBoundLogger, structlog.get_logger(component=component, **context))
