"""structlog configuration shared by the library and the reconcile worker."""

from __future__ import annotations

import logging

import structlog

from bodydfi.config import Settings

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "arq.jobs")


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON (production) or console (local) output.

    Every event carries the deployment environment and version so worker and
    service logs can be told apart downstream.
    """
    json_output = settings.log_format == "json"
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.processors.UnicodeDecoder(), structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s")
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.contextvars.bind_contextvars(
        service="bodydfi-ledger",
        environment=settings.environment,
        version=settings.app_version,
    )
