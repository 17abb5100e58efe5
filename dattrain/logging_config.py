"""structlog setup shared by the CLI and long-running services."""

from __future__ import annotations

import logging

import structlog

from dattrain.config import get_settings


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog processors from settings (overridable per call)."""
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    use_json = settings.log_json if json_output is None else json_output
    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=False,
    )
