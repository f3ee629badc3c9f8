"""Logging setup for homespun.

Modules log through ``logging.getLogger(__name__)``; the CLI uses
:func:`get_logger` for key/value events. Both end up in one handler whose
``structlog.stdlib.ProcessorFormatter`` merges the context bound with
:func:`agent_context`, so every line written while a harness works on an
agent carries ``agent_id`` (and ``entity_id`` / ``harness`` when known).
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import IO, Any

import structlog

HANDLER_NAME = "homespun"

# Libraries whose per-request chatter is only useful when debugging
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


def setup_logging(
    *,
    debug: bool = False,
    json_output: bool = False,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Install the homespun handler on the root logger.

    Calling it again replaces the handler installed by the previous call.

    Args:
        debug: Log at DEBUG and let the HTTP client libraries through.
        json_output: One JSON object per line instead of console output.
        stream: Destination, ``sys.stderr`` by default.
    """
    level = logging.DEBUG if debug else logging.INFO
    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == HANDLER_NAME]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_shared_processors(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return handler


def get_logger(name: str = "homespun", **initial: Any) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name, **initial)


@contextmanager
def agent_context(agent_id: str, **fields: str | None) -> Iterator[None]:
    """Bind ``agent_id`` plus any non-empty *fields* to log lines in this context.

    Tasks created inside the block (event pumps, prompt runs) inherit the
    binding.
    """
    bound = {"agent_id": agent_id, **{k: v for k, v in fields.items() if v}}
    with structlog.contextvars.bound_contextvars(**bound):
        yield
