"""Wiring: config -> catalog -> randomizer -> pager -> assembler.

This is intentionally *not* a framework. `build_source(cfg)` returns a
`MinibatchSource` that owns the four pieces; `MinibatchIterator` drives it with
a cursor and exposes get_state/set_state so checkpoint+resume is real.

The cursor is the only state that needs saving. Everything else (chunk order,
sample order, which chunks are resident) is recomputed from (catalog, sweep,
seed) on resume.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np

from chunkwise.config import Config
from chunkwise.types import BatchResult

from .assembler import MinibatchAssembler, StreamContext
from .catalog import Catalog, CatalogBuilder, load_label_tables, load_manifest
from .pager import ChunkPager
from .randomizer import Randomizer
from .readers import FeatureReader, LatticeSource, NpyFeatureReader, NpzLatticeSource

logger = logging.getLogger(__name__)


class MinibatchSource:
    """Owns the catalog and the randomize/page/assemble pipeline over it."""

    def __init__(
        self,
        catalog: Catalog,
        randomizer: Randomizer,
        pager: ChunkPager,
        assembler: MinibatchAssembler,
    ):
        self.catalog = catalog
        self.randomizer = randomizer
        self.pager = pager
        self.assembler = assembler

    @property
    def total_frames(self) -> int:
        """Frames per sweep.

        :return int: Total frames in the catalog.
        """
        return self.catalog.total_frames

    @property
    def frame_mode(self) -> bool:
        return self.randomizer.frame_mode

    def first_valid_cursor(self, global_ts: int) -> int:
        """See `MinibatchAssembler.first_valid_cursor`."""
        return self.assembler.first_valid_cursor(global_ts)

    def get_batch(
        self,
        global_ts: int,
        frames_requested: int,
        worker_index: int = 0,
        worker_count: int = 1,
    ) -> BatchResult:
        """See `MinibatchAssembler.get_batch`."""
        return self.assembler.get_batch(global_ts, frames_requested, worker_index, worker_count)

    def unit_counts(self, label_set: int = 0) -> np.ndarray:
        """Label occurrence counts for one label set.

        :param int label_set: Which label set to count.
        :return np.ndarray: int64 counts indexed by label id.
        """
        return self.catalog.unit_counts(label_set)

    def close(self) -> None:
        """Page out every resident chunk."""
        released = self.pager.release_all()
        if released:
            logger.debug("Released %d resident chunks on close", released)


def _contexts_from_config(cfg: Config) -> list[StreamContext]:
    a = cfg.assembler
    return [
        StreamContext(left=left, right=right, augmented_dim=dim)
        for left, right, dim in zip(a.left_context, a.right_context, a.augmented_dims)
    ]


def build_source(
    cfg: Config,
    *,
    streams: Sequence[Sequence[str]] | None = None,
    readers: Sequence[FeatureReader] | None = None,
    labels: Sequence[Mapping[str, np.ndarray]] | None = None,
    lattices: LatticeSource | None = None,
) -> MinibatchSource:
    """Build a `MinibatchSource` from config.

    Without explicit `streams`, locators, labels and lattices come from
    `cfg.catalog.manifest`, and every stream is read with a `NpyFeatureReader`
    rooted at the manifest's root.

    :param Config cfg: Validated configuration.
    :param streams: Per-stream locator lists (overrides the manifest).
    :param readers: One feature reader per stream.
    :param labels: One key -> frame-label mapping per label set.
    :param lattices: Optional auxiliary-graph source.
    :raises ValueError: If inputs are missing or inconsistent with the config.
    :return MinibatchSource: Ready-to-use source (nothing paged in yet).
    """
    if streams is None:
        if cfg.catalog.manifest is None:
            raise ValueError("build_source: set catalog.manifest or pass streams explicitly")
        manifest = load_manifest(cfg.catalog.manifest)
        streams = manifest.streams
        if readers is None:
            readers = [NpyFeatureReader(manifest.root) for _ in streams]
        if labels is None:
            labels = load_label_tables(manifest.labels)
        if lattices is None and manifest.lattices is not None:
            lattices = NpzLatticeSource(manifest.lattices)
    if readers is None:
        raise ValueError("build_source: readers are required when streams are passed explicitly")
    labels = list(labels or ())

    if len(streams) != cfg.num_streams:
        raise ValueError(
            f"build_source: {len(streams)} feature streams given, but the assembler config "
            f"lists context for {cfg.num_streams}"
        )
    if len(readers) != len(streams):
        raise ValueError(f"build_source: {len(readers)} readers for {len(streams)} streams")
    if cfg.randomizer.frame_mode and lattices is not None:
        raise ValueError("build_source: lattices are per utterance and cannot be used in frame mode")

    catalog = CatalogBuilder.from_config(cfg.catalog).build(
        streams, [r.num_frames for r in readers], labels=labels
    )
    randomizer = Randomizer(
        catalog.primary,
        randomization_range=cfg.randomizer.randomization_range,
        frame_mode=cfg.randomizer.frame_mode,
        seed=cfg.randomizer.seed,
    )
    pager = ChunkPager(
        randomizer,
        catalog.streams,
        readers,
        lattices=lattices,
        max_attempts=cfg.pager.max_attempts,
        retry_delay_sec=cfg.pager.retry_delay_sec,
    )
    assembler = MinibatchAssembler(
        catalog,
        randomizer,
        pager,
        contexts=_contexts_from_config(cfg),
        align_workers=cfg.assembler.align_workers,
        device_put=cfg.assembler.device_put,
    )
    return MinibatchSource(catalog, randomizer, pager, assembler)


def catalog_fingerprint(catalog: Catalog, cfg: Config) -> dict[str, Any]:
    """A small, stable fingerprint that we store alongside the cursor.

    A restored cursor only means the same thing if the catalog and the
    randomization knobs are the same.

    :param Catalog catalog: Built catalog.
    :param Config cfg: Configuration the catalog was built with.
    :return dict[str, Any]: JSON-serializable fingerprint.
    """
    h = hashlib.sha1()
    for chunk in catalog.primary:
        for unit in chunk.units:
            h.update(unit.locator.encode("utf-8"))
            h.update(b"\0")
    return {
        "locators_sha1": h.hexdigest(),
        "num_units": catalog.num_units,
        "num_chunks": catalog.num_chunks,
        "total_frames": catalog.total_frames,
        "num_streams": catalog.num_streams,
        "randomization_range": cfg.randomizer.randomization_range,
        "frame_mode": cfg.randomizer.frame_mode,
        "seed": cfg.randomizer.seed,
    }


class MinibatchIterator:
    """Cursor-driven iterator over a `MinibatchSource`.

    Never ends on its own: the time axis repeats the data once per sweep.
    Each step advances the shared cursor by `frames_advanced`, which is the
    same on every worker.
    """

    def __init__(
        self,
        source: MinibatchSource,
        *,
        frames_per_batch: int,
        worker_index: int = 0,
        worker_count: int = 1,
        start: int = 0,
        fingerprint: dict[str, Any] | None = None,
    ):
        """Initialize the iterator.

        :param MinibatchSource source: Source to draw from.
        :param int frames_per_batch: Frames requested per call.
        :param int worker_index: This worker's index.
        :param int worker_count: Number of workers.
        :param int start: Starting frame; rounded up to a valid cursor.
        :param fingerprint: Optional fingerprint checked on `set_state`.
        """
        if frames_per_batch <= 0:
            raise ValueError(f"frames_per_batch must be positive, got {frames_per_batch}")
        self._source = source
        self._frames_per_batch = int(frames_per_batch)
        self._worker_index = int(worker_index)
        self._worker_count = int(worker_count)
        self._fingerprint = dict(fingerprint) if fingerprint is not None else None
        self._cursor = source.first_valid_cursor(int(start))
        self._last_stats: dict[str, int | bool] = {}

    @property
    def cursor(self) -> int:
        return self._cursor

    def __iter__(self) -> MinibatchIterator:
        return self

    def __next__(self) -> BatchResult:
        res = self._source.get_batch(
            self._cursor, self._frames_per_batch, self._worker_index, self._worker_count
        )
        self._last_stats = {
            "cursor": self._cursor,
            "sweep": res.sweep,
            "frames_advanced": res.frames_advanced,
            "frames_returned": res.batch.num_frames,
            "paged_from_storage": res.paged_from_storage,
            "resident_chunks": self._source.pager.resident_count,
        }
        self._cursor += res.frames_advanced
        return res

    def get_stats(self) -> dict[str, int | bool]:
        """Return stats for the latest batch.

        :return dict[str, int | bool]: Cursor, sweep and paging stats.
        """
        return dict(self._last_stats)

    # -------- checkpoint hooks --------

    def get_state(self) -> dict[str, Any]:
        """Capture current iterator state for checkpointing.

        :return dict[str, Any]: JSON-serializable state with cursor and fingerprint.
        """
        state: dict[str, Any] = {"cursor": int(self._cursor)}
        if self._fingerprint is not None:
            state["fingerprint"] = dict(self._fingerprint)
        return state

    def set_state(self, state: dict[str, Any]) -> None:
        """Restore iterator state from a checkpoint.

        :param dict[str, Any] state: State dict from get_state().
        :raises RuntimeError: If the saved fingerprint does not match this source.
        """
        saved = state.get("fingerprint")
        if saved is not None and self._fingerprint is not None:
            mismatched = sorted(
                k for k in set(saved) | set(self._fingerprint) if saved.get(k) != self._fingerprint.get(k)
            )
            if mismatched:
                details = ", ".join(
                    f"{k} (checkpoint={saved.get(k)!r}, current={self._fingerprint.get(k)!r})"
                    for k in mismatched
                )
                raise RuntimeError(f"Cannot restore data iterator state: {details}")
        if "cursor" in state:
            self._cursor = int(state["cursor"])
        self._last_stats = {}


def build_iterator(cfg: Config, *, source: MinibatchSource | None = None, start: int = 0) -> Any:
    """Build the Grain-backed minibatch iterator.

    :param Config cfg: Configuration.
    :param source: Optional pre-built source; built from config if None.
    :param int start: Starting frame.
    :return Any: Iterator yielding `BatchResult` objects.
    """
    if source is None:
        source = build_source(cfg)
    from chunkwise.data.grain import build_grain_iterator

    return build_grain_iterator(cfg, source=source, start=start)
