from __future__ import annotations

import logging
import sys
from typing import Optional

from .config import LoggingConfig

ROOT_LOGGER = "host_mcp"

_configured_level = logging.INFO


def configure_logging(config: LoggingConfig) -> None:
    global _configured_level

    handlers: list[logging.Handler] = []
    if config.file:
        handlers.append(logging.FileHandler(config.file, encoding="utf-8"))
    else:
        handlers.append(logging.StreamHandler(sys.stderr))

    _configured_level = getattr(logging, config.level.upper(), logging.INFO)
    logging.basicConfig(
        level=_configured_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=handlers,
        force=True,
    )
    set_debug(config.debug)


def set_debug(enabled: bool) -> None:
    """Toggle verbose connection and tool-call logging at runtime."""
    level = logging.DEBUG if enabled else _configured_level
    logging.getLogger(ROOT_LOGGER).setLevel(level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not name:
        return logging.getLogger(ROOT_LOGGER)
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
