"""Grain-backed iterator wrappers for chunkwise.

No prefetch stage is added on top: the assembler must be called from a single
thread, in cursor order, and prefetching would run it on a background thread.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from chunkwise.config import Config
from chunkwise.types import BatchResult

from .pipeline import MinibatchIterator, MinibatchSource, catalog_fingerprint

logger = logging.getLogger(__name__)


class _IteratorProtocol(Protocol):
    """Protocol for Grain dataset iterators."""

    def __next__(self) -> BatchResult: ...

    def get_state(self) -> dict[str, Any]:
        """Return iterator state for checkpointing."""
        ...

    def set_state(self, state: dict[str, Any]) -> None:
        """Restore iterator state from a checkpoint."""
        ...


class GrainMinibatchIterator:
    """Iterator wrapper that runs the minibatch source through Grain."""

    def __init__(self, *, ds: Any) -> None:
        """Initialize the Grain-backed iterator.

        :param ds: Grain IterDataset yielding BatchResult objects.
        """
        self._ds = ds
        self._it: _IteratorProtocol = iter(ds)

    def __iter__(self) -> GrainMinibatchIterator:
        return self

    def __next__(self) -> BatchResult:
        return next(self._it)

    def get_state(self) -> dict[str, Any]:
        """Return iterator state for checkpointing.

        :return dict[str, Any]: Serializable iterator state.
        """
        return self._it.get_state()

    def set_state(self, state: dict[str, Any]) -> None:
        """Restore iterator state from checkpoint."""
        self._it.set_state(state)

    def checkpoint_target(self) -> Any:
        """Return the Grain iterator to hand to a checkpointer.

        :return Any: The underlying Grain DatasetIterator.
        """
        return self._it

    def get_stats(self) -> dict[str, int | bool]:
        """Return stats for the latest batch.

        :return dict[str, int | bool]: Cursor and paging stats, empty if unavailable.
        """
        get_stats = getattr(self._it, "get_stats", None)
        if callable(get_stats):
            return dict(get_stats())
        return {}


def _make_grain_iter_classes(grain: Any) -> tuple[type[Any], type[Any]]:
    """Create Grain dataset classes without importing grain at module import time.

    :param grain: Imported grain module.
    :return tuple[type[Any], type[Any]]: Iterator and dataset classes.
    """

    class _MinibatchDatasetIterator(grain.DatasetIterator):  # type: ignore[misc]
        """DatasetIterator that delegates to MinibatchIterator."""

        def __init__(self, *, cfg: Config, source: MinibatchSource, start: int) -> None:
            """Initialize the dataset iterator.

            :param Config cfg: Configuration.
            :param MinibatchSource source: Source to draw from.
            :param int start: Starting frame.
            """
            super().__init__()
            a = cfg.assembler
            self._it = MinibatchIterator(
                source,
                frames_per_batch=a.frames_per_batch,
                worker_index=a.worker_index,
                worker_count=a.worker_count,
                start=start,
                fingerprint=catalog_fingerprint(source.catalog, cfg),
            )

        def __next__(self) -> BatchResult:
            return next(self._it)

        def get_state(self) -> dict[str, Any]:
            """Return iterator state for checkpointing.

            :return dict[str, Any]: Serializable iterator state.
            """
            return self._it.get_state()

        def set_state(self, state: dict[str, Any]) -> None:
            """Restore iterator state from checkpoint."""
            self._it.set_state(state)

        def get_stats(self) -> dict[str, int | bool]:
            """Return stats for the latest batch.

            :return dict[str, int | bool]: Cursor and paging stats.
            """
            return self._it.get_stats()

    class _MinibatchIterDataset(grain.IterDataset):  # type: ignore[misc]
        """IterDataset that yields chunkwise BatchResult objects."""

        def __init__(self, *, cfg: Config, source: MinibatchSource, start: int) -> None:
            """Initialize the dataset.

            :param Config cfg: Configuration.
            :param MinibatchSource source: Source to draw from.
            :param int start: Starting frame.
            """
            super().__init__()
            self._cfg = cfg
            self._source = source
            self._start = int(start)

        def __iter__(self) -> grain.DatasetIterator:
            return _MinibatchDatasetIterator(cfg=self._cfg, source=self._source, start=self._start)

    return _MinibatchDatasetIterator, _MinibatchIterDataset


def build_grain_iterator(
    cfg: Config, *, source: MinibatchSource, start: int = 0
) -> GrainMinibatchIterator:
    """Build a Grain-backed minibatch iterator.

    :param Config cfg: Configuration.
    :param MinibatchSource source: Source to draw from.
    :param int start: Starting frame.
    :raises RuntimeError: If grain is not installed.
    :return GrainMinibatchIterator: Iterator yielding BatchResult objects.
    """
    try:
        import grain.python as grain
    except Exception as exc:  # pragma: no cover - missing dependency
        raise RuntimeError("Grain is not installed. Install with `pip install grain`.") from exc

    _MinibatchDatasetIterator, _MinibatchIterDataset = _make_grain_iter_classes(grain)
    ds = _MinibatchIterDataset(cfg=cfg, source=source, start=start)
    logger.debug(
        "Built Grain minibatch iterator (worker %d of %d, %d frames per batch)",
        cfg.assembler.worker_index,
        cfg.assembler.worker_count,
        cfg.assembler.frames_per_batch,
    )
    return GrainMinibatchIterator(ds=ds)
