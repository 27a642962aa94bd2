"""
Logging configuration for doc-translator.

Console output goes through rich; a rotating file handler keeps a local copy.
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from doc_translator.config import LoggingConfig

_HANDLER_MARKER = "_doc_translator_handler"


def setup_logging(config: LoggingConfig | None = None, console: Console | None = None) -> None:
    """
    Configure the ``doc_translator`` logger hierarchy.

    Safe to call more than once; handlers installed by a previous call are
    replaced rather than duplicated.

    Args:
        config: Logging section of the settings. Defaults are used if None.
        console: Rich console shared with the CLI, if any.
    """
    config = config or LoggingConfig()
    logger = logging.getLogger("doc_translator")
    logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    rich_handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    setattr(rich_handler, _HANDLER_MARKER, True)
    logger.addHandler(rich_handler)

    if config.file:
        log_file = Path(config.file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(config.format))
        setattr(file_handler, _HANDLER_MARKER, True)
        logger.addHandler(file_handler)

    logger.propagate = False
