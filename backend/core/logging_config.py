"""Structured logging for the API process and the Celery workers.

Both structlog loggers and stdlib ``logging`` loggers go through the same
processor chain, so engine modules can use either. Context bound with
``bind_run_context`` (run, workflow, subject) is attached to every line
logged while a run is being advanced, whichever logger emitted it.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from app.config import get_settings

NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "celery": logging.INFO,
}


def _service_fields(process_name: str):
    settings = get_settings()

    def add_service(logger, method_name, event_dict):
        event_dict.setdefault("service", process_name)
        event_dict.setdefault("env", settings.ENVIRONMENT)
        return event_dict

    return add_service


def setup_logging(process_name: str = "api") -> None:
    """Configure logging once per process.

    Args:
        process_name: "api" or "worker"; added to every JSON line
    """
    settings = get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _service_fields(process_name),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=settings.is_development)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=shared_processors,
    ))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.SQLALCHEMY_ECHO else logging.WARNING
    )


@contextmanager
def bind_run_context(
    run_id: str,
    workflow_id: Optional[str] = None,
    subject_id: Optional[str] = None,
) -> Iterator[None]:
    """Attach run identifiers to every log line inside the block."""
    fields = {"run_id": run_id}
    if workflow_id:
        fields["workflow_id"] = workflow_id
    if subject_id:
        fields["subject_id"] = subject_id
    with structlog.contextvars.bound_contextvars(**fields):
        yield
