"""Test session configuration."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator

# Tests run on CPU; the assembler only touches JAX for device_put.
os.environ.setdefault("JAX_PLATFORMS", "cpu")

import pytest
from rich.logging import RichHandler

from chunkwise.data.pipeline import MinibatchSource, build_source
from tests.helpers.config_factories import make_cfg
from tests.helpers.fakes import MANY_LENGTHS, make_streams


@pytest.fixture(autouse=True)
def _reset_root_logging() -> Iterator[None]:
    """Drop console/file handlers that setup_python_logging installed during a test."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler, (RichHandler, logging.FileHandler)) or (
            type(handler) is logging.StreamHandler
        ):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def source_factory() -> Callable[..., MinibatchSource]:
    """Build an in-memory source: ``source_factory(lengths, **cfg_kwargs)``."""

    def _build(lengths=MANY_LENGTHS, *, num_streams: int = 1, **kwargs) -> MinibatchSource:
        cfg = make_cfg(num_streams=num_streams, **kwargs)
        streams, readers = make_streams(lengths, num_streams=num_streams)
        return build_source(cfg, streams=streams, readers=readers)

    return _build
