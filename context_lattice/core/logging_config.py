"""
Centralized logging configuration for context_lattice.

Configures the ``context_lattice`` parent logger so every child logger
(context_lattice.memory.window_manager, context_lattice.core.llm_client, …)
inherits handlers and level automatically.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

PARENT_LOGGER = "context_lattice"

_logging_configured = False


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, force: bool = False) -> logging.Logger:
    """Configure context_lattice logging with console and optional file output.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to a rotating log file, or ``None`` for console only.
        force: Drop previously installed handlers and configure again.
    """
    global _logging_configured
    parent_logger = logging.getLogger(PARENT_LOGGER)
    if _logging_configured and not force:
        return parent_logger

    for handler in list(parent_logger.handlers):
        parent_logger.removeHandler(handler)
        handler.close()
    _logging_configured = True

    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    parent_logger.setLevel(numeric_level)
    parent_logger.propagate = False

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # -- Console handler (always on) --
    console = logging.StreamHandler()
    console.setLevel(numeric_level)
    console.setFormatter(fmt)
    parent_logger.addHandler(console)

    if not log_file:
        return parent_logger

    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(fmt)
    parent_logger.addHandler(file_handler)
    return parent_logger
