"""Application-wide logging configuration using rich handlers."""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(
    level: int = logging.INFO,
    log_file: str | None = None,
    *,
    console: Console | None = None,
) -> None:
    """Configure standard logging with RichHandler and optional file output.

    Parameters
    ----------
    level:
        Minimum logging severity. Defaults to ``logging.INFO``.
    log_file:
        Optional path to a log file. When ``None`` the environment variable
        ``SECURESTACK_LOG_FILE`` is consulted. File output always records
        DEBUG detail so a failed run can be reconstructed.
    """
    if log_file is None:
        log_file = os.getenv("SECURESTACK_LOG_FILE")

    rich_handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        markup=False,
        show_path=False,
    )
    rich_handler.setLevel(level)
    handlers: list[logging.Handler] = [rich_handler]

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=5)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.DEBUG if log_file else level,
        handlers=handlers,
        format="%(message)s",
        force=True,
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)


__all__ = ["setup_logging"]
