import logging
import sys
from typing import Any

import structlog

from .settings import Settings, settings


def setup_logging(config: Settings | None = None) -> None:
    """Configure structured logging with structlog."""
    config = config or settings
    level = getattr(logging, config.log_level)

    # Configure standard library logging
    logging.basicConfig(
        format="%(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
        level=level,
    )

    processors: list[Any] = [
        # Correlation IDs bound per request or per worker
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if config.debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            )
        )
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Add request-specific context to all log messages."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def add_worker_context(worker_id: str, **context: Any) -> None:
    """Bind the worker identity to every log line emitted by a worker process."""
    structlog.contextvars.bind_contextvars(worker_id=worker_id, **context)
