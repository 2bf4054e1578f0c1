"""Logging configuration for command-line use."""

from __future__ import annotations

import logging
from pathlib import Path

from rich.logging import RichHandler


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """
    Configure root logging with a rich console handler.

    Args:
        verbose: If True, show DEBUG level; otherwise INFO
        log_file: Optional path to write full logs (always DEBUG level)
    """
    level = logging.DEBUG if verbose else logging.INFO

    handlers: list[logging.Handler] = [
        RichHandler(
            level=level,
            show_time=True,
            show_path=verbose,
            markup=False,
            rich_tracebacks=True,
        )
    ]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(level=logging.DEBUG, handlers=handlers, force=True)

    # Provider SDKs are chatty at DEBUG
    for name in ("httpx", "httpcore", "anthropic", "openai", "LiteLLM"):
        logging.getLogger(name).setLevel(logging.WARNING)
