"""Data loading for chunkwise.

Public contract: `build_source(cfg)` returns a `MinibatchSource` whose
`get_batch(global_ts, frames)` serves randomized minibatches from a
sweep-repeating cursor; `build_iterator(cfg)` wraps it in a resumable
iterator.
"""

from __future__ import annotations

from .assembler import MinibatchAssembler, StreamContext
from .catalog import Catalog, CatalogBuilder, Chunk, Unit
from .pager import ChunkPager
from .pipeline import (
    MinibatchIterator,
    MinibatchSource,
    build_iterator,
    build_source,
    catalog_fingerprint,
)
from .randomizer import Randomizer, SweepRandomization

__all__ = [
    "Catalog",
    "CatalogBuilder",
    "Chunk",
    "ChunkPager",
    "MinibatchAssembler",
    "MinibatchIterator",
    "MinibatchSource",
    "Randomizer",
    "StreamContext",
    "SweepRandomization",
    "Unit",
    "build_iterator",
    "build_source",
    "catalog_fingerprint",
]
