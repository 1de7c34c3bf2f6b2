from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import structlog


def configure_logging(level: str = "INFO", *, json_logs: bool = True) -> None:
    """Configure structlog on top of stdlib logging for the pipeline."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(*, name: str | None = None, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    if kwargs:
        return logger.bind(**kwargs)
    return logger


@contextmanager
def task_log_context(*, task_id: str, tenant_key: str, **extra: Any) -> Iterator[None]:
    """Bind task and tenant identifiers to every log line emitted inside the block.

    Bindings live in contextvars, so concurrently running tasks never see each other's ids.
    """
    tokens = structlog.contextvars.bind_contextvars(task_id=task_id, tenant=tenant_key, **extra)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
