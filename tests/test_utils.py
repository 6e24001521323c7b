"""Logging and metrics utilities."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from rich.logging import RichHandler

from chunkwise.utils.io import MetricsWriter, add_file_logging, setup_python_logging


def test_setup_python_logging_uses_rich_console() -> None:
    setup_python_logging("DEBUG", use_rich=True)
    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0], RichHandler)


def test_setup_python_logging_plain_console() -> None:
    setup_python_logging("WARNING", use_rich=False)
    (handler,) = logging.getLogger().handlers
    assert not isinstance(handler, RichHandler)
    assert handler.level == logging.WARNING


def test_console_filter_hides_noisy_info() -> None:
    setup_python_logging("INFO", use_rich=False)
    (handler,) = logging.getLogger().handlers
    noisy = logging.LogRecord("jax._src.xla_bridge", logging.INFO, __file__, 1, "x", None, None)
    ours = logging.LogRecord("chunkwise.data.pager", logging.INFO, __file__, 1, "x", None, None)
    assert not handler.filter(noisy)
    assert handler.filter(ours)


def test_add_file_logging_is_idempotent(tmp_path: Path) -> None:
    setup_python_logging("INFO", use_rich=False)
    path = tmp_path / "logs" / "run.log"
    add_file_logging(path, level="INFO")
    add_file_logging(path, level="INFO")
    file_handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]
    assert len(file_handlers) == 1
    logging.getLogger("chunkwise.test").info("hello file")
    file_handlers[0].flush()
    assert "hello file" in path.read_text()


def test_metrics_writer_appends_jsonl(tmp_path: Path) -> None:
    path = tmp_path / "m" / "metrics.jsonl"
    with MetricsWriter(path) as w:
        w.write({"batch": 0, "frames": 12})
    with MetricsWriter(path) as w:
        w.write({"batch": 1, "frames": 9})
    rows = [json.loads(line) for line in path.read_text().splitlines()]
    assert rows == [{"batch": 0, "frames": 12}, {"batch": 1, "frames": 9}]
