"""Structured logging for the mangaloom API.

Library modules keep using ``logging.getLogger(__name__)``; their records are
rendered by structlog so every line emitted inside a generation task carries the
``episode_id`` bound for that task.
"""

import logging
import sys

import structlog

NOISY_LOGGERS = [
    "httpx",
    "google_genai",
    "google_genai.models",
    "botocore",
    "boto3",
    "urllib3.connectionpool",
    "aiosqlite",
]


def setup_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """Route stdlib and structlog output through one structlog pipeline.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit one JSON object per line instead of colored console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper()))

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def set_episode_context(episode_id: str) -> None:
    """Bind ``episode_id`` to every log line of the current task."""
    structlog.contextvars.bind_contextvars(episode_id=episode_id)


def clear_episode_context() -> None:
    structlog.contextvars.unbind_contextvars("episode_id")
