"""
structlog setup shared by the API process and the RQ worker.

Worker code runs each job inside job_context() so every event emitted
while the job is processed carries its job_id.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Optional

import structlog

from estimateai.config import settings

QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "openai", "rq.worker")


def setup_logging(json_output: Optional[bool] = None) -> None:
    """JSON lines unless DEBUG is on; stdlib records go through the same renderer."""
    if json_output is None:
        json_output = not settings.DEBUG

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.DB_ECHO else logging.WARNING)


@contextmanager
def job_context(job_id, **extra):
    """Bind job_id (and any extra keys) to every log event inside the block."""
    with structlog.contextvars.bound_contextvars(job_id=str(job_id), **extra):
        yield
