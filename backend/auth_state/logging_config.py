"""
structlog setup for the identity engine.

Modules log with `structlog.get_logger(...)` and snake_case event names plus
key/value context. Never pass tokens, passwords or one-time codes as values.
"""
from __future__ import annotations

import logging

import structlog

_CONFIGURED = False


def configure_logging(level: str = "INFO", *, json: bool = False, force: bool = False) -> None:
    """Install the processor chain once (idempotent unless `force`)."""
    global _CONFIGURED
    if _CONFIGURED and not force:
        return
    level_no = logging.getLevelName(str(level).upper())
    if not isinstance(level_no, int):
        level_no = logging.INFO
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        cache_logger_on_first_use=False,
    )
    _CONFIGURED = True


__all__ = ["configure_logging"]
