"""Structured logging helpers.

The engine logs through whatever structlog logger the host application hands
it. ``configure_logging`` is offered for hosts (and scripts) that have not
configured structlog themselves.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog

CHILD_NAME = "amqp-pubsub"


def create_child_logger(logger: Optional[Any], class_name: str) -> Any:
    """Bind the engine/component identity onto a caller-supplied logger.

    Args:
        logger: A structlog bound logger (or ``None`` for the default one).
        class_name: Name of the component producing the log lines.

    Returns:
        A bound logger carrying ``child`` and ``class`` context keys.
    """
    if logger is None:
        logger = structlog.get_logger()
    return logger.bind(child=CHILD_NAME, **{"class": class_name})


def configure_logging(level: str = "info") -> None:
    """Apply the console processor chain at the given minimum level."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(min_level=level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
