"""Structured logging setup shared by the demo runner and embedding services."""

from __future__ import annotations

import logging.config
import os

import structlog


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Route structlog through stdlib logging with one stream handler.

    ``level`` defaults to ``BANDERA_LOG_LEVEL`` (INFO); ``json_output``
    defaults to ``BANDERA_LOG_JSON`` and otherwise renders for a console.
    """
    level = (level or os.environ.get("BANDERA_LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.environ.get("BANDERA_LOG_JSON", "").strip().lower() in {"1", "true", "yes"}

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    shared_processors = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processors": [
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        renderer,
                    ],
                    "foreign_pre_chain": shared_processors,
                },
            },
            "handlers": {
                "default": {
                    "level": level,
                    "class": "logging.StreamHandler",
                    "formatter": "structured",
                },
            },
            "loggers": {
                "": {
                    "handlers": ["default"],
                    "level": level,
                    "propagate": True,
                },
            },
        }
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
