"""
Logging setup for the recipe autopilot.

Components log through plain ``logging.getLogger(...)``; the pipeline logs
through structlog. Both end up on one stdout handler whose formatter is a
structlog ``ProcessorFormatter``, so every line carries the hostname bound
with ``bind_site`` regardless of which API produced it. Output is JSON in
production (or when LOG_FORMAT asks for it) and coloured console otherwise.
"""

import contextvars
import logging
import sys
from typing import Optional

import structlog

import config

site_contextvar = contextvars.ContextVar("site", default=None)

_SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]


def use_json_logs() -> bool:
    return config.LOG_FORMAT.lower() in ("json", "structured") or config.ENVIRONMENT == "production"


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Install the shared handler on the root logger and configure structlog."""
    json_logs = use_json_logs() if json_logs is None else json_logs
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=True)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    for existing in [h for h in root.handlers if getattr(h, "_autopilot", False)]:
        root.removeHandler(existing)
    handler._autopilot = True
    root.addHandler(handler)
    root.setLevel(getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO))

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level]
        + _SHARED_PROCESSORS
        + [
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_site() -> Optional[str]:
    return site_contextvar.get()


def bind_site(hostname: str) -> None:
    """Attach a hostname to every log line emitted in this context."""
    site_contextvar.set(hostname)
    structlog.contextvars.bind_contextvars(site=hostname)


def clear_site() -> None:
    site_contextvar.set(None)
    structlog.contextvars.unbind_contextvars("site")


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


configure_logging()
