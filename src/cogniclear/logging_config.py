# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""structlog + stdlib bridge. CLI: ConsoleRenderer, embedded/host: JSONRenderer.

Modules log through ``logging.getLogger(__name__)``; records pass through
the structlog processor chain so pipeline runs can bind ``run_id`` and
``page_key`` via contextvars.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

_LEVEL_ENV = "COGNICLEAR_LOG_LEVEL"

# Noisy third-party loggers kept at WARNING unless DEBUG is requested
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def resolve_level(level: str | None = None) -> int:
    """Map a level name (or ``$COGNICLEAR_LOG_LEVEL``) to a logging constant."""
    name = (level or os.environ.get(_LEVEL_ENV, "") or "INFO").strip().upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def configure(*, json_output: bool = False, level: str | None = None) -> None:
    """Install the structlog formatter on the root logger.

    Args:
        json_output: JSON lines when True, human-readable console output otherwise.
        level: Root level name; falls back to ``$COGNICLEAR_LOG_LEVEL`` then INFO.
    """
    shared = _shared_processors()
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared,
        )
    )

    root_level = resolve_level(level)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if root_level <= logging.DEBUG else logging.WARNING)
