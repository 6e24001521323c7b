"""Logging + metrics utilities.

chunkwise uses deliberately boring IO:
- stdlib logging, with a Rich console handler when available
- an optional log file that captures everything
- JSONL metrics that are append-only and resilient (work even if the process crashes)
"""

from __future__ import annotations

import contextlib
import json
import logging
from pathlib import Path
from typing import Any

_NOISY_CONSOLE_PREFIXES = ("jax", "jaxlib", "absl", "grain")


class _ConsoleNoiseFilter(logging.Filter):
    """Filter that hides noisy third-party INFO logs from the console."""

    def filter(self, record: logging.LogRecord) -> bool:
        for prefix in _NOISY_CONSOLE_PREFIXES:
            if record.name.startswith(prefix):
                return record.levelno >= logging.WARNING
        return True


def _console_handler(level: int, *, use_rich: bool) -> logging.Handler:
    """Build a console handler with optional Rich formatting."""

    if use_rich:
        try:
            from rich.logging import RichHandler

            handler: logging.Handler = RichHandler(
                show_time=True,
                show_level=True,
                show_path=False,
                markup=False,
                rich_tracebacks=False,
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
        except Exception:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))

    handler.setLevel(level)
    handler.addFilter(_ConsoleNoiseFilter())
    return handler


def setup_python_logging(level: str, *, use_rich: bool = True) -> None:
    """Configure Python logging with a console handler.

    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    :param bool use_rich: If True, use Rich for nicer console logs when available.
    """
    numeric_level = getattr(logging, level, logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(_console_handler(numeric_level, use_rich=use_rich))


def add_file_logging(path: str | Path, *, level: str) -> None:
    """Attach a file handler that captures all logs.

    :param path: Log file path.
    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == str(path.resolve()):
            return
    file_handler = logging.FileHandler(path)
    file_handler.setLevel(getattr(logging, level, logging.INFO))
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    root.addHandler(file_handler)


class MetricsWriter:
    """Append-only JSONL metrics writer."""

    def __init__(self, path: str | Path):
        """Initialize the metrics writer.

        :param path: Path to the JSONL file.
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._f = self.path.open("a", buffering=1)

    def write(self, row: dict[str, Any]) -> None:
        """Write a metrics row to the JSONL file.

        :param dict[str, Any] row: Dictionary of metrics to write.
        """
        self._f.write(json.dumps(row, ensure_ascii=False) + "\n")
        self._f.flush()

    def close(self) -> None:
        """Close the file handle."""
        with contextlib.suppress(Exception):
            self._f.close()

    def __enter__(self) -> MetricsWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
