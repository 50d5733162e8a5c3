"""structlog configuration shared by the API and the arq worker."""

import logging

import structlog

from racestay.config import Settings

# Per-statement and per-request chatter that drowns out booking events.
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "httpx", "uvicorn.access")


def _service_context(settings: Settings) -> structlog.types.Processor:
    def add_context(_logger: object, _method: str, event_dict: dict) -> dict:  # type: ignore[type-arg]
        event_dict.setdefault("service", "racestay")
        event_dict.setdefault("env", settings.environment)
        return event_dict

    return add_context


def setup_logging(settings: Settings) -> None:
    """JSON lines in deployed environments, coloured console output locally."""
    renderer: structlog.types.Processor
    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            _service_context(settings),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
